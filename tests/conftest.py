import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ADMIN_PASSWORD"] = "test-admin"
os.environ["REDIS_URL"] = "redis://localhost:6399/15"

import pytest
import redis
from fastapi.testclient import TestClient
from secure_mcq.core import cache
from secure_mcq.core.auth import create_token
from secure_mcq.core.database import SessionLocal, engine
from secure_mcq.main import app
from secure_mcq.models.orm import Base
from helpers import make_questions


class FakePipeline:
    def __init__(self, client):
        self.client, self.calls = client, []

    def incr(self, key, amount=1):
        self.calls.append(lambda: self.client.incr(key, amount))
        return self

    def expire(self, key, seconds):
        self.calls.append(lambda: self.client.expire(key, seconds))
        return self

    def execute(self):
        return [call() for call in self.calls]


class FakeRedis:
    """Just enough of redis-py for the advisory counters."""

    def __init__(self):
        self.store, self.ttl = {}, {}

    def incr(self, key, amount=1):
        self.store[key] = int(self.store.get(key, 0)) + amount
        return self.store[key]

    def expire(self, key, seconds):
        self.ttl[key] = seconds
        return True

    def get(self, key):
        value = self.store.get(key)
        return None if value is None else str(value)

    def setex(self, key, seconds, value):
        self.store[key], self.ttl[key] = value, seconds
        return True

    def pipeline(self):
        return FakePipeline(self)


class BrokenRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("redis is down")
        return fail


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    return fake


@pytest.fixture
def broken_redis(monkeypatch):
    monkeypatch.setattr(cache, "redis_client", BrokenRedis())


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin():
    return {"Authorization": f"Bearer {create_token('admin', ['admin'], 3600)}"}


@pytest.fixture
def seed(client, admin):
    """Two banks and one active assessment drawing 2 + 1 questions."""
    def _seed(code="EXAM1", passcode="open-sesame", activate=True, **overrides):
        existing = {b["code"] for b in client.get("/v1/admin/banks", headers=admin).json()}
        for bank, n in (("alpha", 4), ("beta", 3)):
            if bank in existing:
                continue
            r = client.post(f"/v1/admin/banks/{bank}/import", json=make_questions(bank, n), headers=admin)
            assert r.status_code == 200, r.text
        body = {
            "code": code,
            "title": f"{code} title",
            "passcode": passcode,
            "durationMinutes": 30,
            "totalQuestions": 3,
            "allocations": [{"bankCode": "alpha", "count": 2}, {"bankCode": "beta", "count": 1}],
        }
        body.update(overrides)
        r = client.put("/v1/admin/assessments", json=body, headers=admin)
        assert r.status_code == 200, r.text
        if activate:
            r = client.post(f"/v1/admin/assessments/{code}/activate", headers=admin)
            assert r.status_code == 200, r.text
        return r.json()
    return _seed


@pytest.fixture
def start(client):
    def _start(student_id="S1", name="Ada Lovelace", passcode="open-sesame", code="EXAM1", **extra):
        body = {"fullName": name, "studentId": student_id, "passcode": passcode, "assessmentCode": code, **extra}
        return client.post("/v1/auth/start", json=body)
    return _start

