"""
Release gate: decides whether a finalized result is visible to its student, and
hands notification work to the queue when results are released.
"""
import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from secure_mcq.core.config import settings
from secure_mcq.core.errors import ExamError
from secure_mcq.models.orm import Assessment, ExamSession, Submission
from secure_mcq.services import timer

logger = logging.getLogger(__name__)


def is_released(assessment: Optional[Assessment], now: Optional[datetime] = None) -> bool:
    if assessment is None:
        return False
    if assessment.results_released:
        return True
    if settings.RESULTS_RELEASE_ON_WINDOW_CLOSE and assessment.window_end is not None:
        return timer.as_utc(assessment.window_end) <= (now or timer.utcnow())
    return False


def visibility(assessment: Optional[Assessment], result: Optional[dict]) -> dict:
    if is_released(assessment):
        return {"released": True, "result": result}
    return {"released": False, "pendingRelease": True, "message": "Results are not released yet."}


def gated_result(assessment: Optional[Assessment], result: dict) -> dict:
    if not is_released(assessment):
        raise ExamError("results_not_released", 403, pendingRelease=True, message="Results are not released yet.")
    return {"released": True, "result": result}


def results_link(session: ExamSession) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/v1/results/{session.result_access_token}"


def pending_notifications(db: Session, assessment: Assessment) -> List[dict]:
    rows = db.execute(
        select(Submission, ExamSession)
        .join(ExamSession, ExamSession.token == Submission.session_token)
        .where(Submission.assessment_id == assessment.id, Submission.student_email != "")
    ).all()
    return [
        {"to": sub.student_email, "student_name": sub.student_name, "test_name": assessment.title, "results_url": results_link(sess)}
        for sub, sess in rows
    ]


def set_release(db: Session, assessment: Assessment, released: bool) -> List[dict]:
    """Flip the gate. Returns the e-mail hand-offs owed when results become visible."""
    was_released = assessment.results_released
    assessment.results_released = released
    if released and not was_released and settings.EMAIL_ENABLED:
        return pending_notifications(db, assessment)
    return []


def enqueue_notifications(notifications: List[dict]) -> int:
    if not notifications:
        return 0
    from secure_mcq.jobs.notify_job import send_results_released_email
    from secure_mcq.jobs.queue import enqueue
    queued = 0
    for n in notifications:
        if enqueue(send_results_released_email, **n) is not None:
            queued += 1
    logger.info("queued %s of %s results-released e-mails", queued, len(notifications))
    return queued
