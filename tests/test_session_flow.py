from collections import Counter
from datetime import timedelta
from secure_mcq.services import timer
from helpers import answer_current, bearer, load_session, submissions_for


def test_start_issues_capability_and_hides_correct_flag(client, seed, start):
    seed()
    r = start()
    assert r.status_code == 201, r.text
    started = r.json()
    assert started["resumed"] is False
    assert started["assessment"]["code"] == "EXAM1"
    assert 0 < started["remainingMs"] <= 30 * 60 * 1000

    q = client.get(f"/v1/session/{started['token']}/question", headers=bearer(started)).json()
    assert q["questionIndex"] == 0 and q["totalQuestions"] == 3
    assert q["progressLabel"] == "Question 1 of 3"
    assert [o["displayLabel"] for o in q["question"]["options"]] == ["A", "B", "C", "D"]
    assert all("correct" not in o for o in q["question"]["options"])


def test_snapshot_honours_allocation(client, db, seed, start):
    seed()
    started = start().json()
    session = load_session(db, started["token"])
    assert Counter(q["bankCode"] for q in session.questions_snapshot) == {"alpha": 2, "beta": 1}
    assert len({q["id"] for q in session.questions_snapshot}) == 3


def test_full_run_is_graded_and_gated_until_release(client, db, seed, start, admin):
    seed()
    started = start().json()
    token, headers = started["token"], bearer(started)

    assert answer_current(client, started, "a").json()["done"] is False
    assert answer_current(client, started, "b").json()["done"] is False
    last = answer_current(client, started, "a").json()
    assert last["done"] is True
    assert last["status"] == "completed"
    assert last["released"] is False and last["pendingRelease"] is True

    r = client.get(f"/v1/session/{token}/result", headers=headers)
    assert r.status_code == 403 and r.json()["error"] == "results_not_released"

    assert client.post("/v1/admin/assessments/EXAM1/release", json={"released": True}, headers=admin).status_code == 200
    result = client.get(f"/v1/session/{token}/result", headers=headers).json()
    assert result["released"] is True
    assert result["result"]["score"] == 2 and result["result"]["total"] == 3
    assert result["result"]["percentage"] == 67
    assert result["result"]["terminationReason"] == "completed"

    linked = client.get(f"/v1/results/{started['resultAccessToken']}").json()
    assert linked["result"] == result["result"]
    stored = submissions_for(db, token)
    assert len(stored) == 1
    # what the student sees after release is exactly what was computed at finalize
    assert stored[0].result_payload == result["result"]


def test_answers_must_follow_sequence(client, db, seed, start):
    seed()
    started = start().json()
    session = load_session(db, started["token"])
    second = session.questions_snapshot[1]["id"]
    r = client.post(f"/v1/session/{started['token']}/answer",
                    json={"questionId": second, "selectedOriginalId": "a"}, headers=bearer(started))
    assert r.status_code == 409
    assert r.json() == {"error": "invalid_question_sequence", "currentIndex": 0}


def test_option_must_belong_to_question(client, seed, start):
    seed()
    started = start().json()
    r = answer_current(client, started, "zz")
    assert r.status_code == 400 and r.json()["error"] == "invalid_option_for_question"


def test_null_selection_is_recorded_as_unanswered(client, db, seed, start):
    seed()
    started = start().json()
    q = client.get(f"/v1/session/{started['token']}/question", headers=bearer(started)).json()
    r = client.post(f"/v1/session/{started['token']}/answer",
                    json={"questionId": q["question"]["id"], "selectedOriginalId": None}, headers=bearer(started))
    assert r.status_code == 200
    assert load_session(db, started["token"]).answers == [{"questionId": q["question"]["id"], "selectedOriginalId": None}]


def test_autosave_draft_used_for_null_answer_and_at_finalize(client, db, seed, start):
    seed()
    started = start().json()
    token, headers = started["token"], bearer(started)
    q = client.get(f"/v1/session/{token}/question", headers=headers).json()["question"]
    assert client.post(f"/v1/session/{token}/autosave", json={"questionId": q["id"], "selectedOriginalId": "a"},
                       headers=headers).json() == {"ok": True}
    client.post(f"/v1/session/{token}/answer", json={"questionId": q["id"], "selectedOriginalId": None}, headers=headers)

    q2 = client.get(f"/v1/session/{token}/question", headers=headers).json()["question"]
    client.post(f"/v1/session/{token}/autosave", json={"questionId": q2["id"], "selectedOriginalId": "a"}, headers=headers)
    client.post(f"/v1/session/{token}/submit", json={}, headers=headers)

    session = load_session(db, token)
    assert session.status == "submitted"
    assert session.score == 2


def test_capability_is_scoped_to_one_session(client, seed, start):
    seed()
    mine = start("S1").json()
    theirs = start("S2", name="Grace Hopper").json()
    r = client.get(f"/v1/session/{theirs['token']}/question", headers=bearer(mine))
    assert r.status_code == 403 and r.json()["error"] == "session_forbidden"
    assert client.get(f"/v1/session/{theirs['token']}/question").status_code == 401


def test_submit_is_idempotent(client, db, seed, start, admin):
    seed()
    started = start().json()
    url, headers = f"/v1/session/{started['token']}/submit", bearer(started)
    first = client.post(url, json={}, headers=headers)
    second = client.post(url, json={"autoSubmitted": True}, headers=headers)
    assert first.status_code == second.status_code == 200
    assert first.json()["terminationReason"] == second.json()["terminationReason"] == "manual_submit"
    client.post("/v1/admin/assessments/EXAM1/release", json={"released": True}, headers=admin)
    payload = client.get(f"/v1/session/{started['token']}/result", headers=headers).json()["result"]
    third = client.post(url, json={}, headers=headers).json()
    assert third["result"] == payload
    assert client.get(f"/v1/session/{started['token']}/result", headers=headers).json()["result"] == payload
    stored = submissions_for(db, started["token"])
    assert len(stored) == 1 and stored[0].result_payload == payload

    r = client.get(f"/v1/session/{started['token']}/question", headers=headers)
    assert r.status_code == 409 and r.json()["error"] == "session_not_active"


def test_expired_session_is_finalized_on_next_access(client, db, seed, start):
    seed()
    started = start().json()
    answer_current(client, started, "a")
    session = load_session(db, started["token"])
    session.expires_at = timer.utcnow() - timedelta(seconds=1)
    db.commit()

    r = client.get(f"/v1/session/{started['token']}/question", headers=bearer(started))
    assert r.status_code == 410 and r.json()["error"] == "timer_expired"
    session = load_session(db, started["token"])
    assert session.status == "submitted"
    assert session.termination_reason == "timer_expired" and session.auto_submitted is True
    assert session.score == 1

    r = client.post(f"/v1/session/{started['token']}/answer",
                    json={"questionId": "anything", "selectedOriginalId": "a"}, headers=bearer(started))
    assert r.status_code == 409 and r.json()["error"] == "session_not_active"


def test_expiry_capped_by_window_end(client, seed, start):
    window_end = timer.utcnow() + timedelta(minutes=5)
    seed(windowEnd=window_end.isoformat())
    started = start().json()
    assert started["remainingMs"] <= 5 * 60 * 1000
    assert started["expiresAt"] == started["windowEndAt"]


def test_sweep_finalizes_only_expired_sessions(client, db, seed, start, admin):
    seed()
    stale = start("S1").json()
    fresh = start("S2", name="Grace Hopper").json()
    session = load_session(db, stale["token"])
    session.expires_at = timer.utcnow() - timedelta(minutes=1)
    db.commit()

    r = client.post("/v1/admin/sweep", params={"inline": True}, headers=admin)
    assert r.json() == {"mode": "inline", "finalized": [stale["token"]]}
    assert load_session(db, fresh["token"]).status == "active"
    assert load_session(db, stale["token"]).termination_reason == "timer_expired"


def test_state_reports_progress(client, seed, start):
    seed()
    started = start().json()
    answer_current(client, started)
    state = client.get(f"/v1/session/{started['token']}/state", headers=bearer(started)).json()
    assert state["status"] == "active"
    assert state["answered"] == 1 and state["total"] == 3 and state["currentIndex"] == 1
    assert state["disconnectCount"] == 0


def test_snapshot_survives_bank_edits(client, db, seed, start, admin):
    seed()
    started = start().json()
    q = client.get(f"/v1/session/{started['token']}/question", headers=bearer(started)).json()["question"]
    session = load_session(db, started["token"])
    bank = session.questions_snapshot[0]["bankCode"]
    edited = {
        "id": q["id"], "category": "General", "stem": "rewritten stem",
        "options": [{"id": "a", "text": "new", "correct": True}, {"id": "b", "text": "other"}],
    }
    assert client.put(f"/v1/admin/banks/{bank}/questions", json=edited, headers=admin).status_code == 200
    again = client.get(f"/v1/session/{started['token']}/question", headers=bearer(started)).json()["question"]
    assert again["stem"] == q["stem"] != "rewritten stem"
    assert len(again["options"]) == 4
