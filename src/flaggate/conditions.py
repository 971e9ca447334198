"""ルール条件のパースと照合"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Union

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool, None]
ConditionValue = Union[Scalar, tuple[Scalar, ...]]
Conditions = dict[str, ConditionValue]
Context = Mapping[str, Scalar]

# 過去の不具合で永続化されたプレースホルダ文字列
_PLACEHOLDER = "[object Object]"

_SCALAR_TYPES = (str, int, float, bool)


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, _SCALAR_TYPES)


def _reject(raw: Any, reason: str, rule_id: str | None) -> Conditions:
    logger.warning(
        "Ignoring unusable rule conditions",
        extra={"rule_id": rule_id, "reason": reason, "raw_type": type(raw).__name__},
    )
    return {}


def parse_conditions(raw: Any, *, rule_id: str | None = None) -> Conditions:
    """保存形式の conditions を型付きの順序付きマッピングに変換する。

    受け付ける形式は None、マッピング、JSON 文字列。配列・集合の値は
    「許容値の集合」としてタプルに変換する。パースできない値や
    プレースホルダ文字列は警告を出して「条件なし」(空 dict) として扱い、
    例外は送出しない。

    Args:
        raw: ストアから読み出した conditions の生データ
        rule_id: ログ出力用のルール ID

    Returns:
        属性名 -> 期待値 (スカラーまたはスカラーのタプル)
    """
    if raw is None:
        return {}

    data: Any = raw
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        if not text.strip():
            return {}
        if text == _PLACEHOLDER:
            return _reject(raw, "placeholder value", rule_id)
        try:
            data = json.loads(text)
        except ValueError:
            return _reject(raw, "invalid JSON", rule_id)
        if data is None:
            return {}

    if not isinstance(data, Mapping):
        return _reject(raw, "not a mapping", rule_id)

    parsed: Conditions = {}
    for key, expected in data.items():
        if not isinstance(key, str):
            return _reject(raw, "non-string attribute name", rule_id)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if not all(_is_scalar(v) for v in expected):
                return _reject(raw, f"nested value for {key!r}", rule_id)
            parsed[key] = tuple(expected)
        elif _is_scalar(expected):
            parsed[key] = expected
        else:
            return _reject(raw, f"unsupported value for {key!r}", rule_id)
    return parsed


def _equals(actual: Any, expected: Any) -> bool:
    # bool は int のサブクラスなので True == 1 を区別する
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return bool(actual == expected)


def match_conditions(conditions: Mapping[str, ConditionValue], context: Context) -> bool:
    """すべての条件がコンテキストに一致するか (論理 AND) を返す。

    期待値がタプルならコンテキスト値がその要素であること、スカラーなら
    完全一致であることを要求する。コンテキストにキーが無い場合は不一致。
    """
    for key, expected in conditions.items():
        if key not in context:
            return False
        actual = context[key]
        if isinstance(expected, tuple):
            if not any(_equals(actual, candidate) for candidate in expected):
                return False
        elif not _equals(actual, expected):
            return False
    return True


def conditions_to_json(conditions: Mapping[str, ConditionValue]) -> dict[str, Any]:
    """キャッシュ・ワイヤ向けに JSON 互換の dict へ変換する。"""
    return {
        key: list(value) if isinstance(value, tuple) else value
        for key, value in conditions.items()
    }
