# backend/tests/test_evaluator.py

import pytest

from conftest import make_transfer_payload
from transfer_notify.notifications.evaluator import (
    ConditionEvaluator,
    evaluate,
    evaluate_condition,
    evaluate_gate,
    gate_depends_on_user,
)
from transfer_notify.notifications.schemas import (
    ConditionLogic,
    ConditionOperator,
    EventType,
    NotificationEvent,
    NotificationRule,
    RecipientConfig,
    RuleCondition,
)


def _event(**transfer_overrides) -> NotificationEvent:
    return NotificationEvent(
        event_type=EventType.TRANSFER_REQUESTED,
        payload=make_transfer_payload(**transfer_overrides),
    )


def _rule(conditions, logic=ConditionLogic.AND, use_conditions=False) -> NotificationRule:
    return NotificationRule(
        id="r1",
        name="rule",
        event=EventType.TRANSFER_REQUESTED,
        conditions=conditions,
        condition_logic=logic,
        recipients=RecipientConfig(use_conditions=use_conditions),
    )


def _cond(field, operator, value="") -> RuleCondition:
    return RuleCondition(field=field, operator=ConditionOperator(operator), value=value)


@pytest.mark.parametrize(
    "operator,value,expected",
    [
        ("equals", "urgent", True),
        ("equals", "Urgent", False),
        ("not_equals", "normal", True),
        ("contains", "rge", True),
        ("contains", "RGE", False),
        ("not_contains", "xyz", True),
        ("not_contains", "urg", False),
    ],
)
def test_operators_are_case_sensitive_string_comparisons(operator, value, expected) -> None:
    event = _event(priority="urgent")
    assert evaluate_condition(_cond("transfer.priority", operator, value), event) is expected


def test_boolean_values_compare_as_lowercase_strings() -> None:
    event = _event(customer_waiting=True)
    assert evaluate_condition(_cond("customerWaiting", "equals", "true"), event)
    assert not evaluate_condition(_cond("customerWaiting", "equals", "True"), event)


def test_numbers_are_stringified_without_trailing_decimal() -> None:
    event = _event()
    assert evaluate_condition(_cond("vehicle.price", "equals", "25999"), event)
    assert evaluate_condition(_cond("vehicle.year", "equals", "2024"), event)


@pytest.mark.parametrize("operator", ["equals", "not_equals", "contains", "not_contains"])
def test_missing_value_is_false_for_every_operator(operator) -> None:
    event = NotificationEvent(event_type=EventType.TRANSFER_REQUESTED, payload={"vehicle": {}})
    assert evaluate_condition(_cond("transfer.priority", operator, "urgent"), event) is False


def test_null_value_is_treated_as_missing() -> None:
    event = _event(priority=None)
    assert evaluate_condition(_cond("priority", "not_equals", "urgent"), event) is False


def test_unknown_field_is_false_even_when_present_in_payload() -> None:
    event = _event(secret="x")
    assert evaluate_condition(_cond("transfer.secret", "equals", "x"), event) is False


def test_empty_condition_list_always_matches() -> None:
    assert evaluate(_rule([]), _event()) is True
    assert evaluate(_rule([], ConditionLogic.OR), _event()) is True


def test_and_or_logic() -> None:
    event = _event(priority="urgent", customer_waiting=False)
    conditions = [
        _cond("priority", "equals", "urgent"),
        _cond("customerWaiting", "equals", "true"),
    ]
    assert evaluate(_rule(conditions, ConditionLogic.AND), event) is False
    assert evaluate(_rule(conditions, ConditionLogic.OR), event) is True


def test_user_conditions_use_candidate_context() -> None:
    rule = _rule([_cond("user.role", "equals", "manager")])
    event = _event()

    assert evaluate(rule, event) is False
    assert evaluate(rule, event, {"role": "manager"}) is True
    assert evaluate(rule, event, {"role": "sales"}) is False


def test_payload_user_is_not_treated_as_recipient() -> None:
    payload = make_transfer_payload()
    payload["user"] = {"role": "manager"}
    event = NotificationEvent(event_type=EventType.TRANSFER_REQUESTED, payload=payload)
    rule = _rule([_cond("user.role", "equals", "manager")])

    assert evaluate(rule, event) is False


def test_gate_without_use_conditions_is_plain_evaluate() -> None:
    rule = _rule([_cond("user.role", "equals", "manager")])
    assert evaluate_gate(rule, _event()) is False


def test_gate_defers_user_conditions_under_and() -> None:
    conditions = [
        _cond("priority", "equals", "urgent"),
        _cond("user.role", "equals", "manager"),
    ]
    rule = _rule(conditions, ConditionLogic.AND, use_conditions=True)

    assert evaluate_gate(rule, _event(priority="urgent")) is True
    assert evaluate_gate(rule, _event(priority="normal")) is False


def test_gate_passes_or_rule_with_pending_user_conditions() -> None:
    conditions = [
        _cond("priority", "equals", "urgent"),
        _cond("user.role", "equals", "manager"),
    ]
    rule = _rule(conditions, ConditionLogic.OR, use_conditions=True)

    assert evaluate_gate(rule, _event(priority="normal")) is True
    assert gate_depends_on_user(rule, _event(priority="normal")) is True
    assert gate_depends_on_user(rule, _event(priority="urgent")) is False


def test_gate_only_depends_on_user_for_or_rules_with_user_conditions() -> None:
    event = _event(priority="normal")
    mixed = [_cond("priority", "equals", "urgent"), _cond("user.role", "equals", "manager")]

    assert gate_depends_on_user(_rule(mixed, ConditionLogic.AND, use_conditions=True), event) is False
    assert gate_depends_on_user(_rule(mixed, ConditionLogic.OR, use_conditions=False), event) is False
    assert (
        gate_depends_on_user(
            _rule([_cond("priority", "equals", "urgent")], ConditionLogic.OR, use_conditions=True), event
        )
        is False
    )
    assert (
        gate_depends_on_user(
            _rule([_cond("user.role", "equals", "admin")], ConditionLogic.OR, use_conditions=True), event
        )
        is True
    )


def test_evaluation_is_pure() -> None:
    evaluator = ConditionEvaluator()
    event = _event(priority="urgent")
    rule = _rule([_cond("priority", "equals", "urgent")])
    before = event.model_dump()

    results = {evaluator.evaluate(rule, event) for _ in range(5)}

    assert results == {True}
    assert event.model_dump() == before
