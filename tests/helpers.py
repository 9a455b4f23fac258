from secure_mcq.models.orm import ExamSession, Submission


def bearer(started: dict) -> dict:
    return {"Authorization": f"Bearer {started['accessToken']}"}


def load_session(db, token) -> ExamSession:
    db.expire_all()
    return db.get(ExamSession, token)


def submissions_for(db, token):
    db.expire_all()
    return db.query(Submission).filter(Submission.session_token == token).all()


def answer_current(client, started, pick="a"):
    """Answer whatever question is current; option "a" is always the correct one in seeded banks."""
    headers = bearer(started)
    q = client.get(f"/v1/session/{started['token']}/question", headers=headers).json()
    return client.post(
        f"/v1/session/{started['token']}/answer",
        json={"questionId": q["question"]["id"], "selectedOriginalId": pick},
        headers=headers,
    )


def make_questions(prefix, n, category="General"):
    return [
        {
            "id": f"{prefix}{i}",
            "category": category,
            "difficulty": "medium",
            "stem": f"{prefix} stem {i}",
            "explanation": f"because {i}",
            "options": [
                {"id": "a", "text": f"{prefix}{i} right", "correct": True},
                {"id": "b", "text": f"{prefix}{i} wrong 1"},
                {"id": "c", "text": f"{prefix}{i} wrong 2"},
                {"id": "d", "text": f"{prefix}{i} wrong 3"},
            ],
        }
        for i in range(1, n + 1)
    ]
