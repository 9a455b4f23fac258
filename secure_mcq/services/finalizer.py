"""
Grading and result materialization. Runs exactly once per session: the caller
holds the session row lock inside ``atomic()``, so the status flip and the
submission row commit or roll back together.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from secure_mcq.models.orm import ExamSession, SessionStatus, Submission, ViolationEvent
from secure_mcq.services import timer

logger = logging.getLogger(__name__)


def percentage(score: int, total: int) -> int:
    """round(score / total * 100), halves rounded up, in exact integer arithmetic."""
    if not total:
        return 0
    return (score * 200 + total) // (2 * total)


def answer_map(answers: List[dict], drafts: Optional[Dict[str, str]] = None) -> Dict[str, Optional[str]]:
    selected = {a["questionId"]: a.get("selectedOriginalId") or None for a in answers or []}
    for question_id, original_id in (drafts or {}).items():
        selected.setdefault(question_id, original_id or None)
    return selected


def grade(snapshot: List[dict], answers: List[dict], drafts: Optional[Dict[str, str]] = None) -> Tuple[int, List[dict]]:
    """Compare selections by stable option key, never by the per-session display label."""
    selected_by_question = answer_map(answers, drafts)
    score, details = 0, []
    for q in snapshot:
        options = q.get("options") or []
        selected_id = selected_by_question.get(q["id"])
        selected = next((o for o in options if o["originalId"] == selected_id), None)
        correct = next((o for o in options if o.get("correct")), None)
        is_correct = selected is not None and correct is not None and selected["originalId"] == correct["originalId"]
        score += int(is_correct)
        details.append({
            "questionId": q["id"],
            "bankCode": q.get("bankCode"),
            "bankName": q.get("bankName"),
            "difficulty": q.get("difficulty"),
            "topicTag": q.get("topicTag"),
            "stem": q.get("stem"),
            "selectedOriginalId": selected["originalId"] if selected else None,
            "selected": selected["text"] if selected else "Unanswered",
            "correctOriginalId": correct["originalId"] if correct else None,
            "correct": correct["text"] if correct else "N/A",
            "explanation": q.get("explanation"),
            "isCorrect": is_correct,
        })
    return score, details


def existing_result(db: Session, token: str) -> Optional[dict]:
    row = db.scalar(select(Submission).where(Submission.session_token == token))
    return row.result_payload if row else None


def violation_count(db: Session, token: str) -> int:
    return db.scalar(select(func.count()).select_from(ViolationEvent).where(ViolationEvent.session_token == token)) or 0


def finalize(db: Session, session: ExamSession, auto_submitted: bool, reason: str, now: Optional[datetime] = None) -> dict:
    if session.status == SessionStatus.SUBMITTED.value:
        return existing_result(db, session.token)

    now = now or timer.utcnow()
    snapshot = session.questions_snapshot or []
    score, details = grade(snapshot, session.answers, session.draft_answers)
    total = len(snapshot)
    payload = {
        "token": session.token,
        "seed": session.seed,
        "student": {"fullName": session.student_name, "studentId": session.student_id, "email": session.student_email or None},
        "score": score,
        "total": total,
        "percentage": percentage(score, total),
        "timeTakenMs": timer.elapsed_ms(session.started_at, now),
        "violationCount": violation_count(db, session.token),
        "submittedAt": timer.isoformat(now),
        "autoSubmitted": bool(auto_submitted),
        "terminationReason": reason or None,
        "details": details,
    }

    session.status = SessionStatus.SUBMITTED.value
    session.submitted_at = now
    session.score = score
    session.total = total
    session.auto_submitted = bool(auto_submitted)
    session.awaiting_reconnect = False
    if reason:
        session.termination_reason = reason

    submission = db.scalar(select(Submission).where(Submission.session_token == session.token))
    if submission is None:
        submission = Submission(session_token=session.token)
        db.add(submission)
    submission.assessment_id = session.assessment_id
    submission.student_name = session.student_name
    submission.student_id = session.student_id
    submission.student_email = session.student_email
    submission.score = score
    submission.total = total
    submission.percentage = payload["percentage"]
    submission.time_taken_ms = payload["timeTakenMs"]
    submission.violation_count = payload["violationCount"]
    submission.submitted_at = now
    submission.auto_submitted = bool(auto_submitted)
    submission.termination_reason = reason or None
    submission.result_payload = payload
    db.flush()
    logger.info("session %s finalized reason=%s score=%s/%s", session.token, reason, score, total)
    return payload
