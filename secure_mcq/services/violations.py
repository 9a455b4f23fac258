import logging
from typing import List, Optional
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from secure_mcq.core import cache
from secure_mcq.models.orm import ViolationEvent
from secure_mcq.services import timer

logger = logging.getLogger(__name__)

DISCONNECT = "disconnect"
RECONNECT_RESUME = "reconnect_resume"
TAB_SWITCH = "tab_switch"


def record(db: Session, token: str, event_type: str, details: str = "", question_index: Optional[int] = None) -> bool:
    """
    Append one integrity event. Best effort: the insert runs in a savepoint so a
    failed write is logged and dropped without aborting the caller's transaction.
    """
    try:
        with db.begin_nested():
            db.add(ViolationEvent(
                session_token=token, event_type=event_type, details=details or "",
                question_index=question_index, event_at=timer.utcnow(),
            ))
    except SQLAlchemyError as e:
        logger.warning("violation event %s for session %s not recorded: %s", event_type, token, e)
        return False
    cache.bump_violation_counter(token)
    return True


def count_events(db: Session, token: str, event_type: Optional[str] = None) -> int:
    stmt = select(func.count()).select_from(ViolationEvent).where(ViolationEvent.session_token == token)
    if event_type:
        stmt = stmt.where(ViolationEvent.event_type == event_type)
    return db.scalar(stmt) or 0


def list_events(db: Session, token: str) -> List[dict]:
    rows = db.execute(
        select(ViolationEvent).where(ViolationEvent.session_token == token).order_by(ViolationEvent.event_at)
    ).scalars().all()
    return [
        {"eventType": r.event_type, "details": r.details, "questionIndex": r.question_index, "eventAt": timer.isoformat(r.event_at)}
        for r in rows
    ]
