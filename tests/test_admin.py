from helpers import answer_current, bearer, make_questions


def test_admin_login(client):
    r = client.post("/v1/auth/admin-login", json={"password": "test-admin"})
    assert r.status_code == 200 and r.json()["roles"] == ["admin"]
    token = r.json()["access_token"]
    assert client.get("/v1/admin/banks", headers={"Authorization": f"Bearer {token}"}).status_code == 200

    bad = client.post("/v1/auth/admin-login", json={"password": "guess"})
    assert bad.status_code == 401 and bad.json()["error"] == "invalid_credentials"


def test_admin_routes_need_admin_role(client, seed, start):
    seed()
    started = start().json()
    assert client.get("/v1/admin/banks").status_code == 401
    r = client.get("/v1/admin/banks", headers=bearer(started))
    assert r.status_code == 403 and r.json()["error"] == "forbidden"


def test_banks_listed_with_counts(client, seed, admin):
    seed()
    banks = client.get("/v1/admin/banks", headers=admin).json()
    assert [(b["code"], b["questionCount"]) for b in banks] == [("alpha", 4), ("beta", 3)]


def test_activation_is_exclusive(client, seed, admin):
    seed("FIRST")
    seed("SECOND")
    listed = {a["code"]: a["storedStatus"] for a in client.get("/v1/admin/assessments", headers=admin).json()}
    assert listed == {"FIRST": "closed", "SECOND": "active"}
    assert client.get("/v1/assessment/active").json()["code"] == "SECOND"


def test_allocation_validated_when_saving(client, seed, admin):
    seed()
    body = {
        "code": "BIG", "durationMinutes": 10, "totalQuestions": 5,
        "allocations": [{"bankCode": "beta", "count": 5}],
    }
    r = client.put("/v1/admin/assessments", json=body, headers=admin)
    assert r.status_code == 400
    assert r.json() == {"error": "insufficient_bank_questions", "bankCode": "beta", "requested": 5, "available": 3, "deficit": 2}

    body["allocations"] = [{"bankCode": "alpha", "count": 4}]
    r = client.put("/v1/admin/assessments", json=body, headers=admin)
    assert r.json()["error"] == "allocation_total_mismatch"


def test_bank_in_use_cannot_be_deleted_or_replaced(client, seed, admin):
    seed()
    r = client.delete("/v1/admin/banks/beta", headers=admin)
    assert r.status_code == 409
    assert r.json() == {"error": "bank_in_use", "bankCode": "beta", "assessments": ["EXAM1"]}
    r = client.post("/v1/admin/banks/beta/import", json=make_questions("beta", 5), headers=admin)
    assert r.status_code == 409

    client.post("/v1/admin/banks", json={"code": "spare", "name": "Spare"}, headers=admin)
    assert client.delete("/v1/admin/banks/spare", headers=admin).json() == {"ok": True}


def test_question_payload_validated(client, admin):
    bad = make_questions("q", 1)
    bad[0]["options"][1]["correct"] = True
    r = client.post("/v1/admin/banks/alpha/import", json=bad, headers=admin)
    assert r.status_code == 400
    assert r.json()["problems"] == ["exactly_one_correct_option_required"]

    single = make_questions("q", 1)
    single[0]["options"] = single[0]["options"][:1]
    r = client.post("/v1/admin/banks/alpha/import", json=single, headers=admin)
    assert "option_count_out_of_range" in r.json()["problems"]


def test_question_upsert_and_delete(client, admin):
    client.post("/v1/admin/banks", json={"code": "Gamma", "name": "Gamma"}, headers=admin)
    q = make_questions("g", 1)[0]
    assert client.put("/v1/admin/banks/gamma/questions", json=q, headers=admin).status_code == 200
    listed = client.get("/v1/admin/banks/gamma/questions", headers=admin).json()
    assert [x["id"] for x in listed] == ["g1"] and len(listed[0]["options"]) == 4
    assert client.delete("/v1/admin/banks/gamma/questions/g1", headers=admin).status_code == 200
    assert client.delete("/v1/admin/banks/gamma/questions/g1", headers=admin).status_code == 404


def test_results_listing_filters(client, seed, start, admin):
    seed()
    good = start("S1").json()
    for _ in range(3):
        answer_current(client, good, "a")
    poor = start("S2", name="Grace Hopper").json()
    client.post(f"/v1/session/{poor['token']}/submit", json={}, headers=bearer(poor))

    everything = client.get("/v1/admin/results", params={"assessment": "EXAM1"}, headers=admin).json()
    assert sorted(r["score"] for r in everything) == [0, 3]
    top = client.get("/v1/admin/results", params={"min_score": 3}, headers=admin).json()
    assert [r["studentId"] for r in top] == ["S1"]

    detail = client.get(f"/v1/admin/results/{good['token']}", headers=admin).json()
    assert detail["result"]["percentage"] == 100


def test_release_toggle(client, seed, start, admin):
    seed()
    started = start().json()
    client.post(f"/v1/session/{started['token']}/submit", json={}, headers=bearer(started))
    r = client.post("/v1/admin/assessments/EXAM1/release", json={"released": True}, headers=admin).json()
    assert r == {"code": "EXAM1", "resultsReleased": True, "notificationsQueued": 0}
    assert client.get(f"/v1/results/{started['resultAccessToken']}").status_code == 200

    client.post("/v1/admin/assessments/EXAM1/release", json={"released": False}, headers=admin)
    r = client.get(f"/v1/results/{started['resultAccessToken']}")
    assert r.status_code == 403 and r.json()["pendingRelease"] is True
    assert client.get("/v1/results/not-a-token").status_code == 404
