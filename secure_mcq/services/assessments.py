import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from secure_mcq.core.auth import hash_secret
from secure_mcq.core.errors import ExamError, NotFound
from secure_mcq.models.orm import Assessment, AssessmentStatus
from secure_mcq.services import allocation, banks, timer

logger = logging.getLogger(__name__)

DEFAULT_INTEGRITY_NOTICE = """ASSESSMENT INTEGRITY NOTICE

This is a supervised assessment. The following measures are active:
- Switching browser tabs or windows will be logged.
- Navigation backwards between questions is not permitted.
- Questions and answer options are randomised for each student.
- All violation events are recorded and may be reviewed by your invigilator.

By proceeding, you confirm that you are completing this assessment without unauthorised assistance."""


def normalize_code(value) -> str:
    return banks.sanitize_text(value).upper()


def get_by_code(db: Session, code: str) -> Assessment:
    a = db.scalar(select(Assessment).where(Assessment.code == normalize_code(code)))
    if a is None:
        raise NotFound("assessment_not_found", assessmentCode=normalize_code(code))
    return a


def current_active(db: Session) -> Optional[Assessment]:
    return db.scalar(
        select(Assessment).where(Assessment.status == AssessmentStatus.ACTIVE.value).order_by(Assessment.updated_at.desc()).limit(1)
    )


def validate_plan(db: Session, raw_plan: list, total_questions: int) -> allocation.DrawPlan:
    return allocation.resolve(allocation.parse_plan(raw_plan), total_questions, lambda code: banks.bank_size(db, code))


def save(db: Session, data: dict) -> Assessment:
    """Create or update an assessment by code. The allocation plan is validated eagerly."""
    code = normalize_code(data.get("code"))
    if not code:
        raise ExamError("test_code_required")
    plan = validate_plan(db, data.get("allocations") or [], data["total_questions"])
    window_start, window_end = timer.as_utc(data.get("window_start")), timer.as_utc(data.get("window_end"))
    if window_start and window_end and window_end <= window_start:
        raise ExamError("invalid_window", windowStart=timer.isoformat(window_start), windowEnd=timer.isoformat(window_end))

    a = db.scalar(select(Assessment).where(Assessment.code == code))
    if a is None:
        a = Assessment(code=code, status=AssessmentStatus.DRAFT.value)
        db.add(a)
    a.title = banks.sanitize_text(data.get("title")) or code
    if data.get("passcode") is not None:
        a.passcode_hash = hash_secret(data["passcode"]) if data["passcode"] else ""
    a.duration_minutes = data["duration_minutes"]
    a.window_start = window_start
    a.window_end = window_end
    a.total_questions = data["total_questions"]
    a.allocations = [{"bankCode": p.bank_code, "count": p.count} for p in plan.parts]
    a.tab_warn_threshold = data.get("tab_warn_threshold", 3)
    a.tab_autosubmit_threshold = data.get("tab_autosubmit_threshold", 5)
    a.fullscreen_enforcement = data.get("fullscreen_enforcement", True)
    a.allow_retakes = data.get("allow_retakes", 0)
    a.integrity_notice = banks.sanitize_text(data.get("integrity_notice")) or DEFAULT_INTEGRITY_NOTICE
    db.flush()
    return a


def activate(db: Session, code: str) -> Assessment:
    """Make ``code`` the only active assessment; any other active one is closed in the same transaction."""
    target = get_by_code(db, code)
    db.execute(
        update(Assessment)
        .where(Assessment.status == AssessmentStatus.ACTIVE.value, Assessment.id != target.id)
        .values(status=AssessmentStatus.CLOSED.value, updated_at=timer.utcnow())
        .execution_options(synchronize_session="fetch")
    )
    target.status = AssessmentStatus.ACTIVE.value
    target.updated_at = timer.utcnow()
    db.flush()
    logger.info("assessment %s activated", target.code)
    return target


def close(db: Session, code: str) -> Assessment:
    a = get_by_code(db, code)
    a.status = AssessmentStatus.CLOSED.value
    db.flush()
    return a


def effective_status(a: Assessment, now: Optional[datetime] = None) -> str:
    """An active assessment whose window has ended reads as closed."""
    now = now or timer.utcnow()
    if a.status == AssessmentStatus.ACTIVE.value and a.window_end is not None and timer.as_utc(a.window_end) <= now:
        return AssessmentStatus.CLOSED.value
    return a.status


def public_view(a: Assessment) -> dict:
    return {
        "code": a.code,
        "title": a.title,
        "durationMinutes": a.duration_minutes,
        "totalQuestions": a.total_questions,
        "allocations": a.allocations,
        "windowStart": timer.isoformat(a.window_start),
        "windowEnd": timer.isoformat(a.window_end),
        "status": effective_status(a),
        "resultsReleased": bool(a.results_released),
        "fullscreenEnforcement": a.fullscreen_enforcement,
        "tabWarnThreshold": a.tab_warn_threshold,
        "tabAutosubmitThreshold": a.tab_autosubmit_threshold,
        "allowRetakes": a.allow_retakes,
        "integrityNotice": a.integrity_notice,
        "passcodeRequired": bool(a.passcode_hash),
    }


def admin_view(a: Assessment) -> dict:
    return {**public_view(a), "id": a.id, "storedStatus": a.status, "createdAt": timer.isoformat(a.created_at), "updatedAt": timer.isoformat(a.updated_at)}


def list_all(db: Session) -> List[Assessment]:
    return list(db.execute(select(Assessment).order_by(Assessment.created_at.desc())).scalars())
