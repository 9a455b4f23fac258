from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session
from secure_mcq.core.auth import require_roles
from secure_mcq.core.database import atomic, get_db
from secure_mcq.core.errors import ExamError, NotFound
from secure_mcq.models.orm import ExamSession, QuestionBank, Submission
from secure_mcq.services import assessments, banks, release, sessions, timer, violations

router = APIRouter(dependencies=[Depends(require_roles("admin"))])


class BankIn(BaseModel):
    code: str
    name: str = ""
    description: str = ""


class OptionIn(BaseModel):
    id: str
    text: str
    correct: bool = False


class QuestionIn(BaseModel):
    id: str
    category: str
    difficulty: str = "medium"
    stem: str
    explanation: str = ""
    image: Optional[str] = None
    topicTag: str = ""
    options: List[OptionIn]


class AllocationIn(BaseModel):
    bankCode: str
    count: int


class AssessmentIn(BaseModel):
    code: str
    title: str = ""
    passcode: Optional[str] = None
    durationMinutes: int = Field(ge=1, le=24 * 60)
    windowStart: Optional[datetime] = None
    windowEnd: Optional[datetime] = None
    totalQuestions: int = Field(ge=1)
    allocations: List[AllocationIn]
    tabWarnThreshold: int = Field(default=3, ge=1)
    tabAutosubmitThreshold: int = Field(default=5, ge=1)
    fullscreenEnforcement: bool = True
    allowRetakes: int = Field(default=0, ge=0)
    integrityNotice: str = ""


class ReleaseIn(BaseModel):
    released: bool = True


def _bank_or_404(db: Session, code: str) -> QuestionBank:
    bank = db.get(QuestionBank, banks.normalize_bank_code(code))
    if bank is None:
        raise NotFound("bank_not_found", bankCode=banks.normalize_bank_code(code))
    return bank


def _question_dict(q: QuestionIn) -> dict:
    raw = q.model_dump()
    raw["options"] = [o.model_dump() for o in q.options]
    return raw


# ---------------------------------------------------------------- banks

@router.get("/banks")
def list_banks(db: Session = Depends(get_db)):
    return banks.list_banks(db)


@router.post("/banks", status_code=201)
def create_bank(payload: BankIn, db: Session = Depends(get_db)):
    code = banks.normalize_bank_code(payload.code)
    if not code:
        raise ExamError("bank_code_required")
    with atomic(db):
        bank = banks.ensure_bank(db, code, banks.sanitize_text(payload.name), banks.sanitize_text(payload.description))
    return {"code": bank.code, "name": bank.name, "description": bank.description}


@router.delete("/banks/{code}")
def delete_bank(code: str, db: Session = Depends(get_db)):
    with atomic(db):
        banks.delete_bank(db, banks.normalize_bank_code(code))
    return {"ok": True}


@router.get("/banks/{code}/questions")
def list_questions(code: str, db: Session = Depends(get_db)):
    bank = _bank_or_404(db, code)
    return banks.fetch_bank_questions(db, bank.code)


@router.put("/banks/{code}/questions")
def upsert_question(code: str, payload: QuestionIn, db: Session = Depends(get_db)):
    with atomic(db):
        bank = _bank_or_404(db, code)
        q = banks.normalize_question(_question_dict(payload))
        banks.upsert_question(db, bank.code, q)
    return {"ok": True, "bankCode": bank.code, "questionId": q["id"]}


@router.delete("/banks/{code}/questions/{question_id}")
def delete_question(code: str, question_id: str, db: Session = Depends(get_db)):
    with atomic(db):
        bank = _bank_or_404(db, code)
        banks.delete_question(db, bank.code, question_id)
    return {"ok": True}


@router.post("/banks/{code}/import")
def import_bank(code: str, payload: List[QuestionIn], db: Session = Depends(get_db)):
    """Replace a bank's contents with ``payload``; the bank is created when missing."""
    bank_code = banks.normalize_bank_code(code)
    if not bank_code:
        raise ExamError("bank_code_required")
    with atomic(db):
        banks.ensure_bank(db, bank_code)
        imported = banks.replace_bank_questions(db, bank_code, [_question_dict(q) for q in payload])
    return {"ok": True, "bankCode": bank_code, "imported": imported}


# ---------------------------------------------------------------- assessments

@router.get("/assessments")
def list_assessments(db: Session = Depends(get_db)):
    return [assessments.admin_view(a) for a in assessments.list_all(db)]


@router.put("/assessments")
def save_assessment(payload: AssessmentIn, db: Session = Depends(get_db)):
    data = {
        "code": payload.code,
        "title": payload.title,
        "passcode": payload.passcode,
        "duration_minutes": payload.durationMinutes,
        "window_start": payload.windowStart,
        "window_end": payload.windowEnd,
        "total_questions": payload.totalQuestions,
        "allocations": [a.model_dump() for a in payload.allocations],
        "tab_warn_threshold": payload.tabWarnThreshold,
        "tab_autosubmit_threshold": payload.tabAutosubmitThreshold,
        "fullscreen_enforcement": payload.fullscreenEnforcement,
        "allow_retakes": payload.allowRetakes,
        "integrity_notice": payload.integrityNotice,
    }
    with atomic(db):
        a = assessments.save(db, data)
    return assessments.admin_view(a)


@router.post("/assessments/{code}/activate")
def activate_assessment(code: str, db: Session = Depends(get_db)):
    with atomic(db):
        a = assessments.activate(db, code)
    return assessments.admin_view(a)


@router.post("/assessments/{code}/close")
def close_assessment(code: str, db: Session = Depends(get_db)):
    with atomic(db):
        a = assessments.close(db, code)
    return assessments.admin_view(a)


@router.post("/assessments/{code}/release")
def release_results(code: str, payload: ReleaseIn, db: Session = Depends(get_db)):
    with atomic(db):
        a = assessments.get_by_code(db, code)
        notifications = release.set_release(db, a, payload.released)
    queued = release.enqueue_notifications(notifications)
    return {"code": a.code, "resultsReleased": a.results_released, "notificationsQueued": queued}


# ---------------------------------------------------------------- results

@router.get("/results")
def list_results(assessment: Optional[str] = None, min_score: Optional[int] = Query(None, ge=0),
                 max_score: Optional[int] = Query(None, ge=0), min_violations: Optional[int] = Query(None, ge=0),
                 db: Session = Depends(get_db)):
    stmt = select(Submission).order_by(Submission.submitted_at.desc())
    if assessment:
        stmt = stmt.where(Submission.assessment_id == assessments.get_by_code(db, assessment).id)
    if min_score is not None:
        stmt = stmt.where(Submission.score >= min_score)
    if max_score is not None:
        stmt = stmt.where(Submission.score <= max_score)
    if min_violations is not None:
        stmt = stmt.where(Submission.violation_count >= min_violations)
    return [
        {
            "token": s.session_token,
            "studentName": s.student_name,
            "studentId": s.student_id,
            "email": s.student_email or None,
            "score": s.score,
            "total": s.total,
            "percentage": s.percentage,
            "timeTakenMs": s.time_taken_ms,
            "violationCount": s.violation_count,
            "submittedAt": timer.isoformat(s.submitted_at),
            "autoSubmitted": s.auto_submitted,
            "terminationReason": s.termination_reason,
        }
        for s in db.execute(stmt).scalars()
    ]


@router.get("/results/{token}")
def result_detail(token: str, db: Session = Depends(get_db)):
    sub = db.scalar(select(Submission).where(Submission.session_token == token))
    if sub is None:
        raise NotFound("result_not_found")
    return {"result": sub.result_payload, "violations": violations.list_events(db, token)}


@router.get("/sessions/{token}/violations")
def session_violations(token: str, db: Session = Depends(get_db)):
    if db.get(ExamSession, token) is None:
        raise NotFound("session_not_found")
    return violations.list_events(db, token)


@router.post("/sweep")
def sweep(inline: bool = False, db: Session = Depends(get_db)):
    """Queue the expired-session sweep, or run it in-request with ``inline=true``."""
    if inline:
        return {"mode": "inline", "finalized": sessions.sweep_expired_sessions(db)}
    from secure_mcq.jobs.queue import enqueue
    from secure_mcq.jobs.sweep_job import sweep_job
    job = enqueue(sweep_job)
    if job is None:
        raise ExamError("queue_unavailable", 503)
    return {"mode": "queued", "jobId": job.get_id()}
