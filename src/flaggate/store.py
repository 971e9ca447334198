"""RuleStore 抽象基底クラスとインメモリ実装"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from .engine import order_rules
from .exceptions import FlagGateError, FlagGateErrorCodes
from .invalidation import InvalidationBus, publish_flag_change
from .models import Flag, InvalidationAction, Rule


class RuleStore(ABC):
    """フラグ・ルールの読み取り専用ストア抽象基底クラス。

    書き込みは外部の管理層が行い、評価コアは読み取りのみ行う。
    """

    @abstractmethod
    async def get_flag(self, application_id: str, key: str) -> Flag | None:
        """アプリケーションとキーでフラグを取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def get_rules(self, flag_id: str) -> list[Rule]:
        """フラグのルールを priority 降順・作成順で返す。"""
        ...

    @abstractmethod
    async def list_flags(self, application_id: str) -> list[Flag]:
        """アプリケーションの全フラグを返す。"""
        ...


class InMemoryRuleStore(RuleStore):
    """テスト・開発用インメモリストア。

    bus を渡すと、変更の適用後に無効化通知を発行する (管理層の振る舞いの再現)。
    """

    def __init__(self, bus: InvalidationBus | None = None) -> None:
        self._flags: dict[tuple[str, str], Flag] = {}
        self._rules: dict[str, dict[str, Rule]] = {}
        self._bus = bus

    async def _notify(
        self, application_id: str, flag_key: str, action: InvalidationAction
    ) -> None:
        if self._bus is not None:
            await publish_flag_change(self._bus, application_id, flag_key, action)

    def _flag_by_id(self, flag_id: str) -> Flag:
        for flag in self._flags.values():
            if flag.id == flag_id:
                return flag
        raise FlagGateError(FlagGateErrorCodes.STORE_ERROR, f"フラグが見つかりません: {flag_id}")

    async def put_flag(self, flag: Flag) -> Flag:
        """フラグを登録・更新する。"""
        now = datetime.now(timezone.utc)
        if flag.created_at is None:
            flag.created_at = now
        flag.updated_at = now
        self._flags[(flag.application_id, flag.key)] = flag
        self._rules.setdefault(flag.id, {})
        await self._notify(flag.application_id, flag.key, InvalidationAction.UPDATE)
        return flag

    async def delete_flag(self, application_id: str, key: str) -> bool:
        flag = self._flags.pop((application_id, key), None)
        if flag is None:
            return False
        self._rules.pop(flag.id, None)
        await self._notify(application_id, key, InvalidationAction.DELETE)
        return True

    async def put_rule(self, rule: Rule) -> Rule:
        """ルールを検証して登録・更新する。"""
        rule.validate()
        flag = self._flag_by_id(rule.flag_id)
        now = datetime.now(timezone.utc)
        if rule.created_at is None:
            rule.created_at = now
        rule.updated_at = now
        self._rules.setdefault(rule.flag_id, {})[rule.id] = rule
        await self._notify(flag.application_id, flag.key, InvalidationAction.UPDATE)
        return rule

    async def delete_rule(self, flag_id: str, rule_id: str) -> bool:
        rules = self._rules.get(flag_id, {})
        if rules.pop(rule_id, None) is None:
            return False
        flag = self._flag_by_id(flag_id)
        await self._notify(flag.application_id, flag.key, InvalidationAction.DELETE)
        return True

    async def get_flag(self, application_id: str, key: str) -> Flag | None:
        return self._flags.get((application_id, key))

    async def get_rules(self, flag_id: str) -> list[Rule]:
        return order_rules(list(self._rules.get(flag_id, {}).values()))

    async def list_flags(self, application_id: str) -> list[Flag]:
        return [flag for (app_id, _), flag in self._flags.items() if app_id == application_id]
