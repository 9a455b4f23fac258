import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (BigInteger, Boolean, DateTime, ForeignKey, ForeignKeyConstraint, Index, Integer, JSON,
                        String, Text, UniqueConstraint, text)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase): pass


def _uuid() -> str: return str(uuid.uuid4())
def _now() -> datetime: return datetime.now(timezone.utc)


class AssessmentStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    SUBMITTED = "submitted"


class Assessment(Base):
    __tablename__ = "assessments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(64), unique=True)
    title: Mapped[str] = mapped_column(String(255))
    passcode_hash: Mapped[str] = mapped_column(String(255), default="")
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    window_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=AssessmentStatus.DRAFT.value, index=True)
    results_released: Mapped[bool] = mapped_column(Boolean, default=False)
    total_questions: Mapped[int] = mapped_column(Integer)
    # [{"bankCode": str, "count": int}, ...]
    allocations: Mapped[list] = mapped_column(JSON, default=list)
    tab_warn_threshold: Mapped[int] = mapped_column(Integer, default=3)
    tab_autosubmit_threshold: Mapped[int] = mapped_column(Integer, default=5)
    fullscreen_enforcement: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_retakes: Mapped[int] = mapped_column(Integer, default=0)
    integrity_notice: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)


class QuestionBank(Base):
    __tablename__ = "question_banks"
    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)


class BankQuestion(Base):
    __tablename__ = "bank_questions"
    bank_code: Mapped[str] = mapped_column(String(64), ForeignKey("question_banks.code", ondelete="CASCADE"), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    category: Mapped[str] = mapped_column(String(255))
    difficulty: Mapped[str] = mapped_column(String(16), default="medium")
    stem: Mapped[str] = mapped_column(Text)
    explanation: Mapped[str] = mapped_column(Text, default="")
    image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    topic_tag: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)


class BankQuestionOption(Base):
    __tablename__ = "bank_question_options"
    __table_args__ = (
        ForeignKeyConstraint(["bank_code", "question_id"], ["bank_questions.bank_code", "bank_questions.id"], ondelete="CASCADE"),
    )
    bank_code: Mapped[str] = mapped_column(String(64), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    option_key: Mapped[str] = mapped_column(String(16), primary_key=True)
    option_text: Mapped[str] = mapped_column(Text)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)


class ExamSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        Index("idx_sessions_student_active", "assessment_id", "student_id", "status"),
        # at most one live attempt per student per assessment
        Index(
            "uq_sessions_one_active", "assessment_id", "student_id", unique=True,
            postgresql_where=text("status = 'active'"), sqlite_where=text("status = 'active'"),
        ),
    )
    token: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    # diagnostic only; shuffles come from the system RNG and are not re-derivable
    seed: Mapped[str] = mapped_column(String(36), default=_uuid)
    assessment_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessments.id"), index=True)
    student_name: Mapped[str] = mapped_column(String(255))
    student_id: Mapped[str] = mapped_column(String(255), index=True)
    student_email: Mapped[str] = mapped_column(String(255), default="")
    user_agent: Mapped[str] = mapped_column(String(512), default="unknown")
    screen_resolution: Mapped[str] = mapped_column(String(64), default="unknown")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    window_end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_access_token: Mapped[str] = mapped_column(String(36), unique=True, default=_uuid)
    status: Mapped[str] = mapped_column(String(16), default=SessionStatus.ACTIVE.value)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    questions_snapshot: Mapped[list] = mapped_column(JSON)
    # [{"questionId": str, "selectedOriginalId": str | None}, ...], append-only
    answers: Mapped[list] = mapped_column(JSON, default=list)
    draft_answers: Mapped[dict] = mapped_column(JSON, default=dict)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    disconnect_count: Mapped[int] = mapped_column(Integer, default=0)
    last_disconnect_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    awaiting_reconnect: Mapped[bool] = mapped_column(Boolean, default=False)
    termination_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class ViolationEvent(Base):
    __tablename__ = "violation_events"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_token: Mapped[str] = mapped_column(String(36), ForeignKey("sessions.token", ondelete="CASCADE"), index=True)
    event_type: Mapped[str] = mapped_column(String(64))
    details: Mapped[str] = mapped_column(Text, default="")
    question_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (UniqueConstraint("session_token", name="uq_submissions_session_token"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_token: Mapped[str] = mapped_column(String(36), ForeignKey("sessions.token", ondelete="CASCADE"))
    assessment_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessments.id"), index=True)
    student_name: Mapped[str] = mapped_column(String(255))
    student_id: Mapped[str] = mapped_column(String(255), index=True)
    student_email: Mapped[str] = mapped_column(String(255), default="")
    score: Mapped[int] = mapped_column(Integer)
    total: Mapped[int] = mapped_column(Integer)
    percentage: Mapped[int] = mapped_column(Integer)
    time_taken_ms: Mapped[int] = mapped_column(BigInteger)
    violation_count: Mapped[int] = mapped_column(Integer)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, index=True)
    auto_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    termination_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result_payload: Mapped[dict] = mapped_column(JSON)
