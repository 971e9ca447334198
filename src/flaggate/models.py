"""flaggate データモデル"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from .conditions import Conditions, Scalar, conditions_to_json, parse_conditions
from .exceptions import FlagGateError, FlagGateErrorCodes

DEFAULT_HASH_KEY = "user_id"


class RuleType(StrEnum):
    """ルール種別 (タグ付きバリアントのタグ)。"""

    TOGGLE = "toggle"
    PERCENTAGE = "percentage"
    CONDITIONAL = "conditional"


class Reason(StrEnum):
    """評価結果の理由コード。"""

    INVALID_INPUT = "INVALID_INPUT"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    FLAG_DISABLED = "FLAG_DISABLED"
    NO_RULES_DEFAULT = "NO_RULES_DEFAULT"
    NO_RULE_MATCH_DEFAULT = "NO_RULE_MATCH_DEFAULT"
    TOGGLE_ENABLED = "TOGGLE_ENABLED"
    TOGGLE_DISABLED = "TOGGLE_DISABLED"
    PERCENTAGE_INCLUDED = "PERCENTAGE_INCLUDED"
    PERCENTAGE_EXCLUDED = "PERCENTAGE_EXCLUDED"
    CONDITIONS_MET = "CONDITIONS_MET"
    CONDITIONAL_PERCENTAGE_INCLUDED = "CONDITIONAL_PERCENTAGE_INCLUDED"
    CONDITIONAL_PERCENTAGE_EXCLUDED = "CONDITIONAL_PERCENTAGE_EXCLUDED"
    MISSING_HASH_VALUE = "MISSING_HASH_VALUE"
    INVALID_PERCENTAGE = "INVALID_PERCENTAGE"
    MISSING_CONDITIONS = "MISSING_CONDITIONS"
    CONDITIONS_NOT_MET = "CONDITIONS_NOT_MET"
    UNKNOWN_RULE_TYPE = "UNKNOWN_RULE_TYPE"
    RULE_EVALUATION_ERROR = "RULE_EVALUATION_ERROR"
    EVALUATION_ERROR = "EVALUATION_ERROR"


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_percentage(value: Any) -> Any:
    """NUMERIC 列 (Decimal や "50.00") を float にそろえる。数値にできない値はそのまま返す。"""
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, (Decimal, str)):
        try:
            return float(Decimal(str(value).strip()))
        except (InvalidOperation, ValueError):
            return value
    return value


@dataclass
class Flag:
    """アプリケーション単位のフィーチャーフラグ。"""

    id: str
    application_id: str
    key: str
    name: str = ""
    description: str = ""
    enabled: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "application_id": self.application_id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flag:
        """ストア行・キャッシュ辞書から Flag を生成する。"""
        return cls(
            id=str(data["id"]),
            application_id=str(data["application_id"]),
            key=data["key"],
            name=data.get("name") or "",
            description=data.get("description") or "",
            enabled=bool(data.get("enabled", False)),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class Rule:
    """フラグに紐づく優先度付きルール。

    type はバリアントのタグで、評価器はエンジン側のテーブルで引く。
    未知のタグもストアから読めるよう str を許容する。
    """

    id: str
    flag_id: str
    type: RuleType | str
    enabled: bool = True
    priority: int = 0
    conditions: Conditions = field(default_factory=dict)
    target_percentage: float | None = None
    hash_key: str = DEFAULT_HASH_KEY
    description: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def validate(self) -> None:
        """ルール種別ごとの不変条件を検証する。

        Raises:
            FlagGateError: 不変条件に違反している場合 (INVALID_INPUT)
        """
        if self.type not in set(RuleType):
            raise FlagGateError(
                FlagGateErrorCodes.INVALID_INPUT,
                f"unknown rule type: {self.type}",
            )
        if self.type == RuleType.PERCENTAGE and self.target_percentage is None:
            raise FlagGateError(
                FlagGateErrorCodes.INVALID_INPUT,
                "target_percentage is required for percentage rules",
            )
        if self.type == RuleType.CONDITIONAL and not self.conditions:
            raise FlagGateError(
                FlagGateErrorCodes.INVALID_INPUT,
                "conditions are required for conditional rules",
            )
        if self.target_percentage is not None and (
            isinstance(self.target_percentage, bool)
            or not isinstance(self.target_percentage, (int, float))
        ):
            raise FlagGateError(
                FlagGateErrorCodes.INVALID_INPUT,
                "target_percentage must be a number",
            )
        if self.target_percentage is not None and not 0 <= self.target_percentage <= 100:
            raise FlagGateError(
                FlagGateErrorCodes.INVALID_INPUT,
                "target_percentage must be between 0 and 100",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flag_id": self.flag_id,
            "type": str(self.type),
            "enabled": self.enabled,
            "priority": self.priority,
            "conditions": conditions_to_json(self.conditions) if self.conditions else None,
            "target_percentage": self.target_percentage,
            "hash_key": self.hash_key,
            "description": self.description,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        """ストア行・キャッシュ辞書から Rule を生成する。conditions はここで一度だけパースする。"""
        rule_id = str(data["id"])
        raw_type = data.get("type", "")
        try:
            rule_type: RuleType | str = RuleType(raw_type)
        except ValueError:
            rule_type = str(raw_type)
        return cls(
            id=rule_id,
            flag_id=str(data["flag_id"]),
            type=rule_type,
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority") or 0),
            conditions=parse_conditions(data.get("conditions"), rule_id=rule_id),
            target_percentage=_parse_percentage(data.get("target_percentage")),
            hash_key=data.get("hash_key") or DEFAULT_HASH_KEY,
            description=data.get("description") or "",
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class EvaluationResult:
    """フラグ評価結果。"""

    enabled: bool
    reason: str
    flag_key: str = ""
    flag_id: str | None = None
    flag_name: str | None = None
    rule_id: str | None = None
    rule_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式の辞書を返す。未設定の任意項目は含めない。"""
        data: dict[str, Any] = {
            "enabled": self.enabled,
            "flag_key": self.flag_key,
            "reason": str(self.reason),
        }
        for name in ("flag_id", "flag_name", "rule_id", "rule_type"):
            value = getattr(self, name)
            if value is not None:
                data[name] = str(value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationResult:
        return cls(
            enabled=data.get("enabled") is True,
            reason=data.get("reason", ""),
            flag_key=data.get("flag_key", ""),
            flag_id=data.get("flag_id"),
            flag_name=data.get("flag_name"),
            rule_id=data.get("rule_id"),
            rule_type=data.get("rule_type"),
        )


@dataclass
class FlagWithRules:
    """キャッシュ単位: フラグとその評価順ルール一覧。"""

    flag: Flag
    rules: list[Rule] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flag": self.flag.to_dict(),
            "rules": [rule.to_dict() for rule in self.rules],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlagWithRules:
        return cls(
            flag=Flag.from_dict(data["flag"]),
            rules=[Rule.from_dict(r) for r in data.get("rules") or []],
        )


class InvalidationAction(StrEnum):
    """無効化通知のアクション。"""

    UPDATE = "update"
    DELETE = "delete"
    BULK_UPDATE = "bulk_update"


@dataclass
class InvalidationEvent:
    """フラグ・ルール変更の無効化通知。"""

    application_id: str
    flag_key: str | None
    action: InvalidationAction = InvalidationAction.UPDATE
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        """ワイヤ形式 (camelCase, timestamp はエポックミリ秒)。"""
        return {
            "applicationId": self.application_id,
            "flagKey": self.flag_key,
            "action": str(self.action),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvalidationEvent:
        return cls(
            application_id=str(data["applicationId"]),
            flag_key=data.get("flagKey"),
            action=InvalidationAction(data.get("action", "update")),
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass
class UsageEvent:
    """評価 1 回分の利用記録。"""

    flag_id: str | None
    app_id: str
    flag_key: str
    enabled: bool
    reason: str
    sanitized_context: dict[str, Scalar] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "flag_id": self.flag_id,
            "app_id": self.app_id,
            "flag_key": self.flag_key,
            "enabled": self.enabled,
            "reason": str(self.reason),
            "sanitized_context": dict(self.sanitized_context),
            "timestamp": self.timestamp.isoformat(),
        }
