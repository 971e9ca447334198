"""フラグ評価エンジン

フラグ・評価順ルール・コンテキストから評価結果を求める純粋関数群。
ルール種別ごとの評価器は ``_EVALUATORS`` テーブルで引く。
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from .bucketing import bucket_for
from .conditions import Context, match_conditions
from .models import EvaluationResult, Flag, Reason, Rule, RuleType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleOutcome:
    """単一ルールの照合結果。matched が False のとき enabled は意味を持たない。"""

    matched: bool
    enabled: bool
    reason: Reason
    bucket: int | None = None


def _no_match(reason: Reason) -> RuleOutcome:
    return RuleOutcome(matched=False, enabled=False, reason=reason)


def _is_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def _valid_percentage(value: object) -> bool:
    return _is_number(value) and 0 <= value <= 100  # type: ignore[operator]


def _hash_value(rule: Rule, context: Context) -> object | None:
    value = context.get(rule.hash_key)
    if value is None or value == "":
        return None
    return value


def _percentage_check(
    rule: Rule,
    context: Context,
    flag_key: str,
    included: Reason,
    excluded: Reason,
) -> RuleOutcome:
    hash_value = _hash_value(rule, context)
    if hash_value is None:
        return _no_match(Reason.MISSING_HASH_VALUE)
    if not _valid_percentage(rule.target_percentage):
        logger.warning(
            "Invalid target_percentage",
            extra={"rule_id": rule.id, "target_percentage": rule.target_percentage},
        )
        return _no_match(Reason.INVALID_PERCENTAGE)
    bucket = bucket_for(hash_value, flag_key)
    inside = bucket < rule.target_percentage  # type: ignore[operator]
    return RuleOutcome(
        matched=True,
        enabled=inside,
        reason=included if inside else excluded,
        bucket=bucket,
    )


def _evaluate_toggle(rule: Rule, context: Context, flag_key: str) -> RuleOutcome:
    return RuleOutcome(
        matched=True,
        enabled=rule.enabled,
        reason=Reason.TOGGLE_ENABLED if rule.enabled else Reason.TOGGLE_DISABLED,
    )


def _evaluate_percentage(rule: Rule, context: Context, flag_key: str) -> RuleOutcome:
    if rule.conditions and not match_conditions(rule.conditions, context):
        return _no_match(Reason.CONDITIONS_NOT_MET)
    return _percentage_check(
        rule,
        context,
        flag_key,
        Reason.PERCENTAGE_INCLUDED,
        Reason.PERCENTAGE_EXCLUDED,
    )


def _evaluate_conditional(rule: Rule, context: Context, flag_key: str) -> RuleOutcome:
    if not rule.conditions:
        logger.warning("Conditional rule has no conditions", extra={"rule_id": rule.id})
        return _no_match(Reason.MISSING_CONDITIONS)
    if not match_conditions(rule.conditions, context):
        return _no_match(Reason.CONDITIONS_NOT_MET)
    target = rule.target_percentage
    if target is not None and not (_is_number(target) and target >= 100):
        return _percentage_check(
            rule,
            context,
            flag_key,
            Reason.CONDITIONAL_PERCENTAGE_INCLUDED,
            Reason.CONDITIONAL_PERCENTAGE_EXCLUDED,
        )
    return RuleOutcome(matched=True, enabled=rule.enabled, reason=Reason.CONDITIONS_MET)


RuleEvaluator = Callable[[Rule, Context, str], RuleOutcome]

_EVALUATORS: dict[str, RuleEvaluator] = {
    RuleType.TOGGLE: _evaluate_toggle,
    RuleType.PERCENTAGE: _evaluate_percentage,
    RuleType.CONDITIONAL: _evaluate_conditional,
}


def evaluate_rule(rule: Rule, context: Context, flag_key: str) -> RuleOutcome:
    """単一ルールを照合する。評価器内の例外はこのルールだけの不一致として扱う。"""
    evaluator = _EVALUATORS.get(rule.type)
    if evaluator is None:
        logger.warning(
            "Unknown rule type",
            extra={"rule_id": rule.id, "rule_type": str(rule.type)},
        )
        return _no_match(Reason.UNKNOWN_RULE_TYPE)
    try:
        return evaluator(rule, context, flag_key)
    except Exception as e:
        logger.error(
            "Rule evaluation error",
            extra={"rule_id": rule.id, "flag_key": flag_key, "error": str(e)},
            exc_info=True,
        )
        return _no_match(Reason.RULE_EVALUATION_ERROR)


def order_rules(rules: Sequence[Rule]) -> list[Rule]:
    """priority 降順、同順位は作成順 (created_at 昇順、不明なら入力順) に並べる。"""

    def sort_key(item: tuple[int, Rule]) -> tuple[int, float, int]:
        position, rule = item
        created = rule.created_at.timestamp() if rule.created_at is not None else math.inf
        return (-int(rule.priority), created, position)

    return [rule for _, rule in sorted(enumerate(rules), key=sort_key)]


def evaluate(
    flag: Flag | None,
    rules: Sequence[Rule],
    context: Context,
    *,
    flag_key: str | None = None,
) -> EvaluationResult:
    """フラグを評価する。

    Args:
        flag: 評価対象フラグ。None ならフラグ未登録として扱う。
        rules: フラグに紐づくルール
        context: 呼び出し元から渡された属性
        flag_key: フラグ未登録時に結果へ載せるキー

    Returns:
        EvaluationResult。ビジネスロジック上の理由で例外は送出しない。
    """
    key = flag.key if flag is not None else (flag_key or "")
    try:
        if flag is None:
            return EvaluationResult(enabled=False, reason=Reason.FLAG_NOT_FOUND, flag_key=key)

        base = EvaluationResult(
            enabled=False,
            reason=Reason.FLAG_DISABLED,
            flag_key=key,
            flag_id=flag.id,
            flag_name=flag.name or flag.key,
        )
        if not flag.enabled:
            return base
        if not isinstance(context, Mapping):
            raise TypeError(f"context must be a mapping, got {type(context).__name__}")

        if not rules:
            base.enabled = flag.enabled
            base.reason = Reason.NO_RULES_DEFAULT
            return base

        for rule in order_rules(rules):
            if not rule.enabled:
                continue
            outcome = evaluate_rule(rule, context, flag.key)
            if outcome.matched:
                base.enabled = outcome.enabled
                base.reason = outcome.reason
                base.rule_id = rule.id
                base.rule_type = str(rule.type)
                return base

        base.enabled = flag.enabled
        base.reason = Reason.NO_RULE_MATCH_DEFAULT
        return base
    except Exception as e:
        logger.error(
            "Flag evaluation error",
            extra={"flag_key": key, "error": str(e)},
            exc_info=True,
        )
        return EvaluationResult(enabled=False, reason=Reason.EVALUATION_ERROR, flag_key=key)
