"""
Failure taxonomy. Every refusal carries a machine-readable ``code`` plus enough
structured detail for the caller to explain itself to the student.
"""
from typing import Any, Dict


class ExamError(Exception):
    status_code: int = 400

    def __init__(self, code: str, status_code: int | None = None, **detail: Any):
        super().__init__(code)
        self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, **self.detail}


class AllocationError(ExamError):
    """Allocation plan cannot be satisfied against current bank inventory."""


class NotFound(ExamError):
    status_code = 404


class Conflict(ExamError):
    status_code = 409
