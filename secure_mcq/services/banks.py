"""
Bank inventory: read access used by the draw path, plus the thin write helpers
behind the admin routes.
"""
import re
from typing import Dict, List, Optional
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from secure_mcq.core.errors import Conflict, ExamError, NotFound
from secure_mcq.models.orm import Assessment, BankQuestion, BankQuestionOption, QuestionBank

DIFFICULTIES = ("easy", "medium", "hard")
_BANK_CODE_STRIP = re.compile(r"[^a-z0-9_-]")
_UNSAFE_TEXT = re.compile(r"[<>`]")


def sanitize_text(value) -> str:
    return _UNSAFE_TEXT.sub("", str(value or "")).strip()


def normalize_bank_code(value) -> str:
    return _BANK_CODE_STRIP.sub("", sanitize_text(value).lower())


def bank_size(db: Session, bank_code: str) -> Optional[int]:
    if db.get(QuestionBank, bank_code) is None:
        return None
    return db.scalar(select(func.count()).select_from(BankQuestion).where(BankQuestion.bank_code == bank_code)) or 0


def fetch_bank_questions(db: Session, bank_code: str) -> List[dict]:
    bank = db.get(QuestionBank, bank_code)
    questions = db.execute(
        select(BankQuestion).where(BankQuestion.bank_code == bank_code).order_by(BankQuestion.id)
    ).scalars().all()
    options = db.execute(
        select(BankQuestionOption).where(BankQuestionOption.bank_code == bank_code).order_by(BankQuestionOption.option_key)
    ).scalars().all()
    by_question: Dict[str, List[dict]] = {}
    for o in options:
        by_question.setdefault(o.question_id, []).append(
            {"option_key": o.option_key, "option_text": o.option_text, "is_correct": o.is_correct}
        )
    return [
        {
            "bank_code": q.bank_code, "bank_name": bank.name if bank else q.bank_code, "id": q.id,
            "category": q.category, "difficulty": q.difficulty, "topic_tag": q.topic_tag or None,
            "stem": q.stem, "explanation": q.explanation, "image": q.image,
            "options": by_question.get(q.id, []),
        }
        for q in questions
    ]


def list_banks(db: Session) -> List[dict]:
    rows = db.execute(
        select(QuestionBank, func.count(BankQuestion.id))
        .outerjoin(BankQuestion, BankQuestion.bank_code == QuestionBank.code)
        .group_by(QuestionBank.code)
        .order_by(QuestionBank.code)
    ).all()
    return [{"code": b.code, "name": b.name, "description": b.description, "questionCount": n} for b, n in rows]


def ensure_bank(db: Session, code: str, name: Optional[str] = None, description: str = "") -> QuestionBank:
    bank = db.get(QuestionBank, code)
    if bank is None:
        bank = QuestionBank(code=code, name=name or f"{code} bank", description=description)
        db.add(bank)
        db.flush()
    elif name:
        bank.name = name
        bank.description = description or bank.description
    return bank


def referencing_assessments(db: Session, bank_code: str) -> List[str]:
    codes = []
    for a in db.execute(select(Assessment)).scalars():
        if any(normalize_bank_code(p.get("bankCode") or p.get("bank_code")) == bank_code for p in a.allocations or []):
            codes.append(a.code)
    return codes


def delete_bank(db: Session, bank_code: str) -> None:
    bank = db.get(QuestionBank, bank_code)
    if bank is None:
        raise NotFound("bank_not_found", bankCode=bank_code)
    users = referencing_assessments(db, bank_code)
    if users:
        raise Conflict("bank_in_use", bankCode=bank_code, assessments=users)
    _clear_bank(db, bank_code)
    db.delete(bank)


def _clear_bank(db: Session, bank_code: str) -> None:
    for model in (BankQuestionOption, BankQuestion):
        for row in db.execute(select(model).where(model.bank_code == bank_code)).scalars():
            db.delete(row)
    db.flush()


def normalize_question(raw: dict) -> dict:
    options = []
    for d in raw.get("options") or raw.get("distractors") or []:
        key = sanitize_text(d.get("id") or d.get("option_key"))
        text = sanitize_text(d.get("text") or d.get("option_text"))
        if key and text:
            options.append({"option_key": key, "option_text": text, "is_correct": bool(d.get("correct") or d.get("is_correct"))})
    q = {
        "id": sanitize_text(raw.get("id")),
        "category": sanitize_text(raw.get("category")),
        "difficulty": sanitize_text(raw.get("difficulty") or "medium").lower(),
        "stem": sanitize_text(raw.get("stem")),
        "explanation": sanitize_text(raw.get("explanation")),
        "image": sanitize_text(raw.get("image")) or None,
        "topic_tag": sanitize_text(raw.get("topic_tag") or raw.get("topicTag")),
        "options": options,
    }
    problems = []
    if not q["id"] or not q["category"] or not q["stem"]:
        problems.append("id_category_stem_required")
    if q["difficulty"] not in DIFFICULTIES:
        problems.append("invalid_difficulty")
    if not 2 <= len(options) <= 6:
        problems.append("option_count_out_of_range")
    if len({o["option_key"] for o in options}) != len(options):
        problems.append("duplicate_option_key")
    if sum(1 for o in options if o["is_correct"]) != 1:
        problems.append("exactly_one_correct_option_required")
    if problems:
        raise ExamError("invalid_question_payload", questionId=q["id"] or None, problems=problems)
    return q


def upsert_question(db: Session, bank_code: str, q: dict) -> None:
    row = db.get(BankQuestion, {"bank_code": bank_code, "id": q["id"]})
    if row is None:
        row = BankQuestion(bank_code=bank_code, id=q["id"])
        db.add(row)
    for field in ("category", "difficulty", "stem", "explanation", "image", "topic_tag"):
        setattr(row, field, q[field])
    for old in db.execute(select(BankQuestionOption).where(
        BankQuestionOption.bank_code == bank_code, BankQuestionOption.question_id == q["id"]
    )).scalars():
        db.delete(old)
    db.flush()
    for o in q["options"]:
        db.add(BankQuestionOption(bank_code=bank_code, question_id=q["id"], **o))
    db.flush()


def replace_bank_questions(db: Session, bank_code: str, payload: List[dict]) -> int:
    """Replace a bank's contents. The whole import is validated before anything is removed."""
    questions = [normalize_question(raw) for raw in payload]
    if len({q["id"] for q in questions}) != len(questions):
        raise ExamError("invalid_question_payload", problems=["duplicate_question_id"])
    users = referencing_assessments(db, bank_code)
    if users:
        raise Conflict("bank_in_use", bankCode=bank_code, assessments=users)
    _clear_bank(db, bank_code)
    for q in questions:
        upsert_question(db, bank_code, q)
    return len(questions)


def delete_question(db: Session, bank_code: str, question_id: str) -> None:
    row = db.get(BankQuestion, {"bank_code": bank_code, "id": question_id})
    if row is None:
        raise NotFound("question_not_found", bankCode=bank_code, questionId=question_id)
    for o in db.execute(select(BankQuestionOption).where(
        BankQuestionOption.bank_code == bank_code, BankQuestionOption.question_id == question_id
    )).scalars():
        db.delete(o)
    db.delete(row)
