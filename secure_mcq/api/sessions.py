from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from secure_mcq.api.auth import enforce_rate_limit
from secure_mcq.core.auth import TokenData, session_capability
from secure_mcq.core.database import get_db
from secure_mcq.core.errors import NotFound
from secure_mcq.services import assessments, sessions

router = APIRouter()


class StartRequest(BaseModel):
    fullName: str = ""
    studentId: str = ""
    email: str = ""
    passcode: str = ""
    assessmentCode: str = ""
    screenResolution: str = "unknown"


class AnswerRequest(BaseModel):
    questionId: str
    selectedOriginalId: Optional[str] = None


class AutosaveRequest(BaseModel):
    questionId: str
    selectedOriginalId: str


class EventRequest(BaseModel):
    eventType: str
    details: str = ""
    questionIndex: Optional[int] = Field(default=None, ge=0)


class SubmitRequest(BaseModel):
    autoSubmitted: bool = False


@router.get("/assessment/active")
def active_assessment(db: Session = Depends(get_db)):
    a = assessments.current_active(db)
    if a is None:
        raise NotFound("assessment_not_found")
    return assessments.public_view(a)


@router.post("/auth/start", status_code=201)
def start(payload: StartRequest, request: Request, db: Session = Depends(get_db)):
    enforce_rate_limit("start", request)
    return sessions.start_session(
        db,
        full_name=payload.fullName,
        student_id=payload.studentId,
        passcode=payload.passcode,
        assessment_code=payload.assessmentCode,
        email=payload.email,
        user_agent=request.headers.get("user-agent", "unknown"),
        screen_resolution=payload.screenResolution,
    )


@router.get("/session/{token}/state")
def session_state(token: str, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.get_state(db, token)


@router.get("/session/{token}/question")
def current_question(token: str, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.get_current_question(db, token)


@router.post("/session/{token}/answer")
def answer(token: str, payload: AnswerRequest, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.submit_answer(db, token, payload.questionId, payload.selectedOriginalId)


@router.post("/session/{token}/autosave")
def autosave(token: str, payload: AutosaveRequest, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.autosave_answer(db, token, payload.questionId, payload.selectedOriginalId)


@router.post("/session/{token}/disconnect")
def disconnect(token: str, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.signal_disconnect(db, token)


@router.post("/session/{token}/event")
def integrity_event(token: str, payload: EventRequest, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.record_event(db, token, payload.eventType, payload.details, payload.questionIndex)


@router.post("/session/{token}/submit")
def submit(token: str, payload: Optional[SubmitRequest] = None, _: TokenData = Depends(session_capability),
           db: Session = Depends(get_db)):
    return sessions.submit_session(db, token, auto_submitted=bool(payload and payload.autoSubmitted))


@router.get("/session/{token}/result")
def session_result(token: str, _: TokenData = Depends(session_capability), db: Session = Depends(get_db)):
    return sessions.fetch_result(db, token)


@router.get("/results/{access_token}")
def result_by_link(access_token: str, db: Session = Depends(get_db)):
    return sessions.fetch_result_by_access_token(db, access_token)
