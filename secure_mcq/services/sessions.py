"""
Exam session lifecycle: start/resume, serve, answer, autosave, disconnect,
integrity events, submit and result fetch.

Every mutating operation re-reads the session row under ``SELECT ... FOR UPDATE``
inside ``atomic()`` and re-checks state after the lock is held. Refusals that are
discovered *after* a state change (a lazy timer-expiry finalize, a disconnect
termination) are returned out of the transaction and raised only after commit,
so the finalize they carry is never rolled back.
"""
import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import List, Optional, Union
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from secure_mcq.core import cache
from secure_mcq.core.auth import create_session_capability, verify_secret
from secure_mcq.core.config import settings
from secure_mcq.core.database import atomic
from secure_mcq.core.errors import Conflict, ExamError, NotFound
from secure_mcq.models.orm import Assessment, AssessmentStatus, ExamSession, SessionStatus, Submission
from secure_mcq.services import allocation, assessments, banks, finalizer, release, shuffle, timer, violations

logger = logging.getLogger(__name__)

Outcome = Union[dict, ExamError]

COMPLETED = "completed"
TIMER_EXPIRED = "timer_expired"
SECOND_DISCONNECT = "second_disconnect"
MANUAL_SUBMIT = "manual_submit"
AUTO_SUBMIT = "auto_submit"
TAB_SWITCH_LIMIT = "tab_switch_limit"


# ---------------------------------------------------------------- helpers

def _get(db: Session, token: str) -> ExamSession:
    session = db.get(ExamSession, token)
    if session is None:
        raise NotFound("session_not_found")
    return session


def _lock(db: Session, token: str) -> ExamSession:
    session = db.scalar(
        select(ExamSession).where(ExamSession.token == token).with_for_update().execution_options(populate_existing=True)
    )
    if session is None:
        raise NotFound("session_not_found")
    return session


def _raise_or_return(outcome: Outcome) -> dict:
    if isinstance(outcome, ExamError):
        raise outcome
    return outcome


def _is_active(session: ExamSession) -> bool:
    return session.status == SessionStatus.ACTIVE.value


def _disconnect_limit_hit(session: ExamSession) -> bool:
    return session.disconnect_count >= settings.DISCONNECT_TERMINATE_THRESHOLD


def _assessment(db: Session, session: ExamSession) -> Optional[Assessment]:
    return db.get(Assessment, session.assessment_id)


def _finished(db: Session, session: ExamSession, result: dict, status: str = "submitted") -> dict:
    return {
        "status": status,
        "terminationReason": session.termination_reason,
        "resultAccessToken": session.result_access_token,
        **release.visibility(_assessment(db, session), result),
    }


def _terminal_refusal(db: Session, session: ExamSession, result: dict, code: str, status_code: int) -> ExamError:
    return ExamError(code, status_code, terminationReason=session.termination_reason, **release.visibility(_assessment(db, session), result))


def _not_active(session: ExamSession) -> Conflict:
    return Conflict("session_not_active", terminationReason=session.termination_reason)


def _lazy_terminal(db: Session, session: ExamSession, now: datetime) -> Optional[ExamError]:
    """Finalize a locked session that is past its deadline or disconnect limit. Caller holds the lock."""
    if _disconnect_limit_hit(session):
        result = finalizer.finalize(db, session, True, SECOND_DISCONNECT, now)
        return _terminal_refusal(db, session, result, "disconnect_limit_reached", 409)
    if timer.is_expired(session.expires_at, now):
        result = finalizer.finalize(db, session, True, TIMER_EXPIRED, now)
        return _terminal_refusal(db, session, result, TIMER_EXPIRED, 410)
    return None


def question_view(session: ExamSession, index: int, now: Optional[datetime] = None) -> Optional[dict]:
    """Client rendering of snapshot[index]; never carries the correctness flag."""
    snapshot = session.questions_snapshot or []
    if index >= len(snapshot):
        return None
    q = snapshot[index]
    return {
        "token": session.token,
        "questionIndex": index,
        "totalQuestions": len(snapshot),
        "progressLabel": f"Question {index + 1} of {len(snapshot)}",
        "remainingMs": timer.remaining_ms(session.expires_at, now),
        "windowRemainingMs": timer.window_remaining_ms(session.window_end_at, now),
        "question": {
            "id": q["id"],
            "category": q.get("category"),
            "difficulty": q.get("difficulty"),
            "topicTag": q.get("topicTag"),
            "stem": q["stem"],
            "image": q.get("image"),
            "options": [{"displayLabel": o["displayLabel"], "originalId": o["originalId"], "text": o["text"]} for o in q["options"]],
        },
    }


def build_snapshot(questions: List[dict]) -> List[dict]:
    ids = Counter(q["id"] for q in questions)
    return [
        {
            # ids are only unique per bank; qualify the ones that collide across banks
            "id": q["id"] if ids[q["id"]] == 1 else f"{q['bank_code']}:{q['id']}",
            "bankCode": q["bank_code"],
            "bankName": q.get("bank_name"),
            "category": q["category"],
            "difficulty": q["difficulty"],
            "topicTag": q.get("topic_tag"),
            "stem": q["stem"],
            "explanation": q.get("explanation"),
            "image": q.get("image"),
            "options": shuffle.shuffle_options(q["options"]),
        }
        for q in questions
    ]


def draw_questions(db: Session, a: Assessment) -> List[dict]:
    """Resolve the allocation against current inventory, sample each bank, then shuffle the merged sequence."""
    plan = allocation.resolve(allocation.parse_plan(a.allocations), a.total_questions, lambda code: banks.bank_size(db, code))
    selected = []
    for part in plan.parts:
        pool = banks.fetch_bank_questions(db, part.bank_code)
        if len(pool) < part.count:
            # bank shrank between the count and the fetch
            raise allocation.AllocationError(
                "insufficient_bank_questions", bankCode=part.bank_code, requested=part.count, available=len(pool), deficit=part.count - len(pool)
            )
        selected.extend(shuffle.draw(pool, part.count))
    return shuffle.fisher_yates(selected)


# ---------------------------------------------------------------- start / resume

def _check_window(a: Assessment, now: datetime) -> None:
    start, end = timer.as_utc(a.window_start), timer.as_utc(a.window_end)
    if start is not None and now < start:
        raise ExamError(
            "exam_not_open_yet", 403,
            windowStart=timer.isoformat(start), windowEnd=timer.isoformat(end), opensInMs=timer.remaining_ms(start, now),
        )
    if end is not None and now >= end:
        raise ExamError("exam_window_closed", 403, windowStart=timer.isoformat(start), windowEnd=timer.isoformat(end))


def _find_assessment(db: Session, code: str) -> Assessment:
    code = assessments.normalize_code(code)
    if not code:
        a = assessments.current_active(db)
        if a is None:
            raise NotFound("assessment_not_found")
        return a
    a = assessments.get_by_code(db, code)
    if a.status == AssessmentStatus.CLOSED.value:
        raise ExamError("assessment_closed", 403, assessmentCode=a.code)
    if a.status != AssessmentStatus.ACTIVE.value:
        raise ExamError("assessment_not_active", 403, assessmentCode=a.code)
    return a


def attempts_used(db: Session, a: Assessment, student_id: str) -> int:
    return db.scalar(
        select(func.count()).select_from(Submission).where(Submission.assessment_id == a.id, Submission.student_id == student_id)
    ) or 0


def _session_started(session: ExamSession, a: Assessment, now: datetime, resumed: bool, warning: Optional[str] = None) -> dict:
    remaining = timer.remaining_ms(session.expires_at, now)
    return {
        "token": session.token,
        "accessToken": create_session_capability(session.token, session.student_id, remaining // 1000),
        "seed": session.seed,
        "resultAccessToken": session.result_access_token,
        "startedAt": timer.isoformat(session.started_at),
        "expiresAt": timer.isoformat(session.expires_at),
        "windowEndAt": timer.isoformat(session.window_end_at),
        "remainingMs": remaining,
        "resumed": resumed,
        "disconnectCount": session.disconnect_count,
        "disconnectsRemaining": max(0, settings.DISCONNECT_TERMINATE_THRESHOLD - session.disconnect_count),
        "warning": warning,
        "answered": len(session.answers or []),
        "assessment": assessments.public_view(a),
    }


def _resume_locked(db: Session, session: ExamSession, a: Assessment, now: datetime) -> Outcome:
    if not _is_active(session):
        return None
    refusal = _lazy_terminal(db, session, now)
    if refusal is not None:
        return refusal
    if not session.awaiting_reconnect:
        # the client vanished without signalling; the reconnect itself is the evidence
        session.disconnect_count += 1
        session.last_disconnect_at = now
    session.awaiting_reconnect = False
    violations.record(db, session.token, violations.RECONNECT_RESUME, f"disconnects={session.disconnect_count}", len(session.answers or []))
    if _disconnect_limit_hit(session):
        result = finalizer.finalize(db, session, True, SECOND_DISCONNECT, now)
        return _terminal_refusal(db, session, result, "disconnect_limit_reached", 409)
    logger.info("session %s resumed after %s disconnect(s)", session.token, session.disconnect_count)
    return _session_started(session, a, now, resumed=True, warning="next_disconnect_terminates")


def _create(db: Session, a: Assessment, student: dict, now: datetime) -> ExamSession:
    snapshot = build_snapshot(draw_questions(db, a))
    expires_at = timer.compute_expiry(now, a.duration_minutes, a.window_end)
    if expires_at <= now:
        raise ExamError("assessment_closed", 403, assessmentCode=a.code, windowEnd=timer.isoformat(a.window_end))
    session = ExamSession(
        token=str(uuid.uuid4()), seed=str(uuid.uuid4()), assessment_id=a.id,
        started_at=now, expires_at=expires_at, window_end_at=timer.as_utc(a.window_end),
        questions_snapshot=snapshot, answers=[], draft_answers={}, status=SessionStatus.ACTIVE.value, **student,
    )
    db.add(session)
    db.flush()
    return session


def _active_session_for(db: Session, a: Assessment, student_id: str) -> Optional[ExamSession]:
    return db.scalar(
        select(ExamSession)
        .where(ExamSession.assessment_id == a.id, ExamSession.student_id == student_id,
               ExamSession.status == SessionStatus.ACTIVE.value)
        .order_by(ExamSession.started_at.desc()).limit(1)
        .with_for_update().execution_options(populate_existing=True)
    )


def start_session(db: Session, *, full_name: str, student_id: str, passcode: str = "", assessment_code: str = "",
                  email: str = "", user_agent: str = "unknown", screen_resolution: str = "unknown",
                  now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    full_name, student_id = banks.sanitize_text(full_name), banks.sanitize_text(student_id)
    if not full_name or not student_id:
        raise ExamError("fullName_and_studentId_required")

    a = _find_assessment(db, assessment_code)
    _check_window(a, now)
    if not verify_secret(banks.sanitize_text(passcode), a.passcode_hash):
        raise ExamError("invalid_passcode", 403)
    used = attempts_used(db, a, student_id)
    if used >= a.allow_retakes + 1:
        raise ExamError("attempt_limit_reached", 403, attempts=used, allowed=a.allow_retakes + 1)

    student = {
        "student_name": full_name, "student_id": student_id,
        "student_email": banks.sanitize_text(email).lower(),
        "user_agent": (user_agent or "unknown")[:512], "screen_resolution": banks.sanitize_text(screen_resolution)[:64] or "unknown",
    }
    # the partial unique index on active (assessment, student) rows serializes racing starts;
    # the loser of a race retries and is handed the winner's session as a plain start
    for attempt in range(2):
        try:
            with atomic(db):
                existing = _active_session_for(db, a, student_id)
                if existing is None:
                    outcome = None
                elif attempt:
                    outcome = _lazy_terminal(db, existing, now) or _session_started(existing, a, now, resumed=False)
                else:
                    outcome = _resume_locked(db, existing, a, now)
                if outcome is None:
                    session = _create(db, a, student, now)
                    outcome = _session_started(session, a, now, resumed=False)
            break
        except IntegrityError:
            if attempt:
                raise
            logger.info("concurrent start for %s on %s; retrying", student_id, a.code)
    if isinstance(outcome, dict) and not outcome["resumed"]:
        cache.cache_session_meta(outcome["token"], {"token": outcome["token"], "studentId": student_id, "startedAt": outcome["startedAt"]})
        logger.info("session %s started for %s on %s", outcome["token"], student_id, a.code)
    return _raise_or_return(outcome)


# ---------------------------------------------------------------- read paths

def _finalize_now(db: Session, token: str, auto: bool, reason: str, now: datetime):
    with atomic(db):
        session = _lock(db, token)
        result = finalizer.finalize(db, session, auto, reason, now)
    return session, result


def get_state(db: Session, token: str, now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    session = _get(db, token)
    answered = len(session.answers or [])
    return {
        "token": session.token,
        "status": session.status,
        "terminationReason": session.termination_reason,
        "remainingMs": timer.remaining_ms(session.expires_at, now) if _is_active(session) else 0,
        "windowRemainingMs": timer.window_remaining_ms(session.window_end_at, now),
        "answered": answered,
        "total": len(session.questions_snapshot or []),
        "currentIndex": answered,
        "disconnectCount": session.disconnect_count,
        "examWindowEndAt": timer.isoformat(session.window_end_at),
    }


def get_current_question(db: Session, token: str, now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    session = _get(db, token)
    if not _is_active(session):
        raise _not_active(session)
    if _disconnect_limit_hit(session) or timer.is_expired(session.expires_at, now):
        with atomic(db):
            session = _lock(db, token)
            outcome = _lazy_terminal(db, session, now) if _is_active(session) else _not_active(session)
        if outcome is not None:
            raise outcome
    index = len(session.answers or [])
    view = question_view(session, index, now)
    if view is None:
        session, result = _finalize_now(db, token, False, COMPLETED, now)
        return _finished(db, session, result, status=COMPLETED)
    return {"status": "ok", **view}


# ---------------------------------------------------------------- answer / autosave

def _expected_question(session: ExamSession, question_id: str) -> Outcome:
    index = len(session.answers or [])
    snapshot = session.questions_snapshot or []
    expected = snapshot[index] if index < len(snapshot) else None
    if expected is None or expected["id"] != question_id:
        return Conflict("invalid_question_sequence", currentIndex=index)
    return expected


def _valid_option(question: dict, original_id: str) -> bool:
    return any(o["originalId"] == original_id for o in question["options"])


def _answer_locked(db: Session, session: ExamSession, question_id: str, selected: Optional[str], now: datetime) -> Outcome:
    if not _is_active(session):
        return _not_active(session)
    refusal = _lazy_terminal(db, session, now)
    if refusal is not None:
        return refusal
    if len(session.answers or []) >= len(session.questions_snapshot or []):
        result = finalizer.finalize(db, session, False, COMPLETED, now)
        return {"done": True, **_finished(db, session, result, status=COMPLETED)}
    expected = _expected_question(session, question_id)
    if isinstance(expected, ExamError):
        return expected
    drafts = dict(session.draft_answers or {})
    resolved = selected or drafts.get(question_id) or None
    if resolved is not None and not _valid_option(expected, resolved):
        return ExamError("invalid_option_for_question", questionId=question_id)

    drafts.pop(question_id, None)
    session.answers = [*(session.answers or []), {"questionId": question_id, "selectedOriginalId": resolved}]
    session.draft_answers = drafts
    db.flush()

    view = question_view(session, len(session.answers), now)
    if view is None:
        result = finalizer.finalize(db, session, False, COMPLETED, now)
        return {"done": True, **_finished(db, session, result, status=COMPLETED)}
    return {"done": False, "next": view, "remainingMs": view["remainingMs"], "examWindowEndAt": timer.isoformat(session.window_end_at)}


def submit_answer(db: Session, token: str, question_id: str, selected: Optional[str], now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    question_id = banks.sanitize_text(question_id)
    if not question_id:
        raise ExamError("questionId_required")
    selected = banks.sanitize_text(selected) or None
    with atomic(db):
        session = _lock(db, token)
        outcome = _answer_locked(db, session, question_id, selected, now)
    return _raise_or_return(outcome)


def _autosave_locked(db: Session, session: ExamSession, question_id: str, selected: str, now: datetime) -> Outcome:
    if not _is_active(session):
        return _not_active(session)
    refusal = _lazy_terminal(db, session, now)
    if refusal is not None:
        return refusal
    expected = _expected_question(session, question_id)
    if isinstance(expected, ExamError):
        return expected
    if not _valid_option(expected, selected):
        return ExamError("invalid_option_for_question", questionId=question_id)
    session.draft_answers = {**(session.draft_answers or {}), question_id: selected}
    return {"ok": True}


def autosave_answer(db: Session, token: str, question_id: str, selected: str, now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    question_id, selected = banks.sanitize_text(question_id), banks.sanitize_text(selected)
    if not question_id or not selected:
        raise ExamError("questionId_and_selectedOriginalId_required")
    with atomic(db):
        session = _lock(db, token)
        outcome = _autosave_locked(db, session, question_id, selected, now)
    return _raise_or_return(outcome)


# ---------------------------------------------------------------- disconnect / events

def _disconnect_locked(db: Session, session: ExamSession, now: datetime) -> dict:
    if not _is_active(session):
        return {"terminated": True, **_finished(db, session, finalizer.existing_result(db, session.token))}
    if timer.is_expired(session.expires_at, now):
        result = finalizer.finalize(db, session, True, TIMER_EXPIRED, now)
        return {"terminated": True, **_finished(db, session, result)}
    session.disconnect_count += 1
    session.last_disconnect_at = now
    session.awaiting_reconnect = True
    violations.record(db, session.token, violations.DISCONNECT, f"disconnects={session.disconnect_count}", len(session.answers or []))
    if _disconnect_limit_hit(session):
        result = finalizer.finalize(db, session, True, SECOND_DISCONNECT, now)
        return {"terminated": True, **_finished(db, session, result)}
    return {
        "terminated": False,
        "status": session.status,
        "disconnectCount": session.disconnect_count,
        "disconnectsRemaining": settings.DISCONNECT_TERMINATE_THRESHOLD - session.disconnect_count,
    }


def signal_disconnect(db: Session, token: str, now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    with atomic(db):
        session = _lock(db, token)
        outcome = _disconnect_locked(db, session, now)
    return outcome


def record_event(db: Session, token: str, event_type: str, details: str = "", question_index: Optional[int] = None,
                 now: Optional[datetime] = None) -> dict:
    """Append an integrity event. Late events on submitted sessions are kept but change nothing."""
    now = now or timer.utcnow()
    event_type = banks.sanitize_text(event_type)
    if not event_type:
        raise ExamError("eventType_required")
    with atomic(db):
        session = _lock(db, token)
        recorded = violations.record(db, token, event_type[:64], banks.sanitize_text(details), question_index)
        out = {"ok": True, "recorded": recorded, "terminated": False}
        if _is_active(session) and _lazy_terminal(db, session, now) is not None:
            # the deadline or disconnect limit wins over any event policy
            out.update(terminated=True, **_finished(db, session, finalizer.existing_result(db, token)))
        elif event_type == violations.TAB_SWITCH and _is_active(session):
            a = _assessment(db, session)
            switches = violations.count_events(db, token, violations.TAB_SWITCH)
            out.update(tabSwitches=switches, warning=switches >= a.tab_warn_threshold)
            if switches >= a.tab_autosubmit_threshold:
                result = finalizer.finalize(db, session, True, TAB_SWITCH_LIMIT, now)
                out.update(terminated=True, **_finished(db, session, result))
    return out


# ---------------------------------------------------------------- submit / result

def submit_session(db: Session, token: str, auto_submitted: bool = False, now: Optional[datetime] = None) -> dict:
    now = now or timer.utcnow()
    with atomic(db):
        session = _lock(db, token)
        if _is_active(session) and timer.is_expired(session.expires_at, now):
            result = finalizer.finalize(db, session, True, TIMER_EXPIRED, now)
        else:
            result = finalizer.finalize(db, session, auto_submitted, AUTO_SUBMIT if auto_submitted else MANUAL_SUBMIT, now)
    return _finished(db, session, result)


def _result_for(db: Session, session: ExamSession, now: datetime) -> dict:
    if _is_active(session):
        if not (_disconnect_limit_hit(session) or timer.is_expired(session.expires_at, now)):
            raise NotFound("result_not_found", status=session.status)
        with atomic(db):
            session = _lock(db, session.token)
            if _is_active(session):
                _lazy_terminal(db, session, now)
    result = finalizer.existing_result(db, session.token)
    if result is None:
        raise NotFound("result_not_found", status=session.status)
    return release.gated_result(_assessment(db, session), result)


def fetch_result(db: Session, token: str, now: Optional[datetime] = None) -> dict:
    return _result_for(db, _get(db, token), now or timer.utcnow())


def fetch_result_by_access_token(db: Session, access_token: str, now: Optional[datetime] = None) -> dict:
    session = db.scalar(select(ExamSession).where(ExamSession.result_access_token == banks.sanitize_text(access_token)))
    if session is None:
        raise NotFound("result_not_found")
    return _result_for(db, session, now or timer.utcnow())


# ---------------------------------------------------------------- sweep

def sweep_expired_sessions(db: Session, now: Optional[datetime] = None) -> List[str]:
    """Finalize every active session already past its deadline, one row lock at a time."""
    now = now or timer.utcnow()
    tokens = db.scalars(
        select(ExamSession.token).where(ExamSession.status == SessionStatus.ACTIVE.value, ExamSession.expires_at <= now)
    ).all()
    db.rollback()
    finalized = []
    for token in tokens:
        with atomic(db):
            session = _lock(db, token)
            if _is_active(session) and timer.is_expired(session.expires_at, now):
                finalizer.finalize(db, session, True, TIMER_EXPIRED, now)
                finalized.append(token)
    if finalized:
        logger.info("sweep finalized %s expired session(s)", len(finalized))
    return finalized
