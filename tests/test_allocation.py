import pytest
from secure_mcq.core.errors import AllocationError
from secure_mcq.services import allocation

INVENTORY = {"alpha": 10, "beta": 3}


def resolve(raw, total):
    return allocation.resolve(allocation.parse_plan(raw), total, INVENTORY.get)


def test_valid_plan():
    plan = resolve([{"bankCode": "Alpha", "count": 4}, {"bankCode": "beta", "count": 3}], 7)
    assert plan.total == 7
    assert [(p.bank_code, p.count) for p in plan.parts] == [("alpha", 4), ("beta", 3)]


def test_insufficient_bank_reports_deficit():
    with pytest.raises(AllocationError) as e:
        resolve([{"bankCode": "beta", "count": 5}], 5)
    assert e.value.code == "insufficient_bank_questions"
    assert e.value.detail == {"bankCode": "beta", "requested": 5, "available": 3, "deficit": 2}


def test_unknown_bank():
    with pytest.raises(AllocationError) as e:
        resolve([{"bankCode": "gamma", "count": 1}], 1)
    assert e.value.code == "bank_not_found"


def test_total_mismatch():
    with pytest.raises(AllocationError) as e:
        resolve([{"bankCode": "alpha", "count": 2}], 3)
    assert e.value.code == "allocation_total_mismatch"
    assert e.value.detail == {"expected": 3, "actual": 2}


@pytest.mark.parametrize("raw,code", [
    ([], "allocation_plan_empty"),
    ([{"bankCode": "alpha", "count": 0}], "invalid_allocation_count"),
    ([{"bankCode": "alpha", "count": "2"}], "invalid_allocation_count"),
    ([{"bankCode": "alpha", "count": 1}, {"bankCode": "ALPHA", "count": 1}], "duplicate_bank_allocation"),
])
def test_rejected_plans(raw, code):
    with pytest.raises(AllocationError) as e:
        resolve(raw, 2)
    assert e.value.code == code
