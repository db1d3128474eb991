import pytest
from pydantic import ValidationError

from stageflow.crm.conditions import condition_evaluator, is_empty_value, normalize_condition


RECORD = {
    "amount": 1500,
    "region": "EMEA",
    "tags": ["vip", "renewal"],
    "close_date": "2026-11-01",
    "notes": "   ",
    "contact": {"email": "ops@example.com"},
}


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        ({"path": "amount", "op": "gt", "value": 1000}, True),
        ({"path": "amount", "op": "lte", "value": "1000"}, False),
        ({"path": "region", "op": "eq", "value": "EMEA"}, True),
        ({"path": "region", "op": "in", "value": ["APAC", "EMEA"]}, True),
        ({"path": "region", "op": "not_in", "value": ["APAC"]}, True),
        ({"path": "tags", "op": "contains", "value": "vip"}, True),
        ({"path": "region", "op": "starts_with", "value": "em"}, True),
        ({"path": "close_date", "op": "gte", "value": "2026-10-17"}, True),
        ({"path": "notes", "op": "is_empty"}, True),
        ({"path": "notes", "op": "exists"}, False),
        ({"path": "owner", "op": "exists"}, False),
        ({"path": "contact.email", "op": "ends_with", "value": "example.com"}, True),
        ({"path": "amount", "op": "gt", "value": None}, False),
    ],
)
def test_leaf_operators(condition: dict, expected: bool) -> None:
    assert condition_evaluator.matches(condition, RECORD) is expected


def test_composites_nest() -> None:
    condition = {
        "all": [
            {"path": "amount", "op": "gte", "value": 1000},
            {"any": [{"path": "region", "op": "eq", "value": "APAC"}, {"path": "tags", "op": "contains", "value": "vip"}]},
            {"not": {"path": "region", "op": "eq", "value": "NA"}},
        ]
    }
    assert condition_evaluator.matches(condition, RECORD) is True
    assert condition_evaluator.matches(condition, {**RECORD, "tags": []}) is False


def test_change_operators_need_previous_values() -> None:
    current = {"stage": "won"}
    assert condition_evaluator.matches({"path": "stage", "op": "changed"}, current) is False
    assert condition_evaluator.matches({"path": "stage", "op": "changed"}, current, {"stage": "proposal"}) is True
    assert (
        condition_evaluator.matches({"path": "stage", "op": "changed_from", "value": "proposal"}, current, {"stage": "proposal"})
        is True
    )
    assert condition_evaluator.matches({"path": "stage", "op": "changed_to", "value": "won"}, current, current) is False


def test_empty_condition_always_matches() -> None:
    assert condition_evaluator.matches(None, RECORD) is True
    assert condition_evaluator.matches({}, RECORD) is True
    assert normalize_condition({}) is None


def test_normalize_rejects_unknown_shapes() -> None:
    with pytest.raises(ValidationError):
        normalize_condition({"path": "amount", "op": "between", "value": [1, 2]})
    with pytest.raises(ValueError):
        normalize_condition({"all": []})
    assert normalize_condition({"not": {"path": "a", "op": "exists"}}) == {
        "not": {"path": "a", "op": "exists", "value": None}
    }


def test_is_empty_value() -> None:
    assert is_empty_value(None)
    assert is_empty_value(" ")
    assert is_empty_value([])
    assert not is_empty_value(0)
    assert not is_empty_value(False)
