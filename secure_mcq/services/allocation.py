"""
Allocation resolver: turns a declarative plan ("N from bank X, M from bank Y")
into a validated draw plan against current bank inventory. Read-only.
"""
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional
from secure_mcq.core.errors import AllocationError
from secure_mcq.services.banks import normalize_bank_code


@dataclass(frozen=True)
class DrawPart:
    bank_code: str
    count: int


@dataclass(frozen=True)
class DrawPlan:
    parts: List[DrawPart]

    @property
    def total(self) -> int:
        return sum(p.count for p in self.parts)


def parse_plan(raw: Optional[Iterable[dict]]) -> List[DrawPart]:
    parts = []
    for item in raw or []:
        code = normalize_bank_code(item.get("bankCode") or item.get("bank_code") or "")
        count = item.get("count")
        if not isinstance(count, int) or isinstance(count, bool) or count <= 0:
            raise AllocationError("invalid_allocation_count", bankCode=code, count=count)
        parts.append(DrawPart(code, count))
    return parts


def resolve(plan: List[DrawPart], declared_total: int, bank_size: Callable[[str], Optional[int]]) -> DrawPlan:
    """
    Validate ``plan`` against inventory. ``bank_size`` returns the number of
    questions in a bank, or None when the bank does not exist.
    """
    if not plan:
        raise AllocationError("allocation_plan_empty")
    seen = set()
    for part in plan:
        if part.bank_code in seen:
            raise AllocationError("duplicate_bank_allocation", bankCode=part.bank_code)
        seen.add(part.bank_code)
        available = bank_size(part.bank_code)
        if available is None:
            raise AllocationError("bank_not_found", bankCode=part.bank_code)
        if part.count > available:
            raise AllocationError(
                "insufficient_bank_questions",
                bankCode=part.bank_code, requested=part.count, available=available, deficit=part.count - available,
            )
    actual = sum(p.count for p in plan)
    if actual != declared_total:
        raise AllocationError("allocation_total_mismatch", expected=declared_total, actual=actual)
    return DrawPlan(list(plan))
