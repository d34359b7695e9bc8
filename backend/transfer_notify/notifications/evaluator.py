# backend/transfer_notify/notifications/evaluator.py

"""
ルール条件の評価ロジック。

副作用を持たない純粋関数として実装し、同じ (rule, event, user) に対しては
常に同じ結果を返す。
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from . import fields
from .schemas import (
    ConditionLogic,
    ConditionOperator,
    NotificationEvent,
    NotificationRule,
    RuleCondition,
)

logger = logging.getLogger(__name__)


def evaluate_condition(
    condition: RuleCondition,
    event: NotificationEvent,
    user: Optional[Mapping[str, Any]] = None,
) -> bool:
    """
    条件 1 件を評価する。

    - レジストリに無いフィールドは「存在しない」とみなし False
      （設定エラーは保存時バリデータで弾く前提で、実行時には落とさない）
    - 値が存在しない場合も演算子に関わらず False
    - equals / not_equals は大文字小文字を区別する完全一致
    - contains / not_contains は大文字小文字を区別する部分一致
    """
    if not fields.is_known_field(event.event_type, condition.field):
        logger.debug(
            "Unknown condition field treated as absent. event_type=%s field=%s",
            event.event_type.value,
            condition.field,
        )
        return False

    context = fields.build_context(event.payload, user)
    raw = fields.get_field_value(context, condition.field)
    if raw is fields.MISSING:
        return False

    actual = fields.stringify(raw)
    expected = condition.value

    if condition.operator == ConditionOperator.EQUALS:
        return actual == expected
    if condition.operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if condition.operator == ConditionOperator.CONTAINS:
        return expected in actual
    if condition.operator == ConditionOperator.NOT_CONTAINS:
        return expected not in actual
    return False


def _combine(results: List[bool], logic: ConditionLogic) -> bool:
    if logic == ConditionLogic.OR:
        return any(results)
    return all(results)


def evaluate(
    rule: NotificationRule,
    event: NotificationEvent,
    user: Optional[Mapping[str, Any]] = None,
) -> bool:
    """
    ルールの全条件を condition_logic で結合して評価する。

    条件が 0 件なら常に True。
    user を渡すと `user.*` フィールドがその候補ユーザーの属性として解決される。
    """
    if not rule.conditions:
        return True

    results = [evaluate_condition(c, event, user) for c in rule.conditions]
    return _combine(results, rule.condition_logic)


def evaluate_gate(rule: NotificationRule, event: NotificationEvent) -> bool:
    """
    ルール単位の一次判定。

    use_conditions が無効なら evaluate() と同じ。
    有効な場合、`user.*` 条件は候補ユーザーごとの絞り込み（recipients.py）に
    回すため、ここではイベント属性の条件だけでゲートする。

    - AND: イベント条件がすべて True ならゲート通過
    - OR: イベント条件のどれかが True、またはユーザー条件が残っていれば通過
      （最終的な判定は候補ごとの evaluate() に委ねる）
    """
    if not rule.recipients.use_conditions:
        return evaluate(rule, event)

    event_conditions = [c for c in rule.conditions if not fields.is_user_field(c.field)]
    has_user_conditions = len(event_conditions) != len(rule.conditions)

    if not event_conditions:
        return True

    results = [evaluate_condition(c, event) for c in event_conditions]
    if rule.condition_logic == ConditionLogic.OR:
        return any(results) or has_user_conditions
    return all(results)


def gate_depends_on_user(rule: NotificationRule, event: NotificationEvent) -> bool:
    """
    evaluate_gate() の通過が候補ユーザー次第かどうか。

    use_conditions 有効・OR で、イベント条件がどれも True でなく
    `user.*` 条件だけが残っている場合に True。このときゲート通過は仮のもので、
    受信者ごとの evaluate() を 1 人も通らなければルールは不成立になる。
    """
    if not rule.recipients.use_conditions or rule.condition_logic != ConditionLogic.OR:
        return False

    event_conditions = [c for c in rule.conditions if not fields.is_user_field(c.field)]
    if len(event_conditions) == len(rule.conditions):
        return False
    return not any(evaluate_condition(c, event) for c in event_conditions)


class ConditionEvaluator:
    """
    evaluate() / evaluate_gate() を DI しやすい形でまとめた薄いラッパー。
    """

    def evaluate(
        self,
        rule: NotificationRule,
        event: NotificationEvent,
        user: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        return evaluate(rule, event, user)

    def evaluate_gate(self, rule: NotificationRule, event: NotificationEvent) -> bool:
        return evaluate_gate(rule, event)

    def gate_depends_on_user(self, rule: NotificationRule, event: NotificationEvent) -> bool:
        return gate_depends_on_user(rule, event)
