import json

import pytest
from fastapi.testclient import TestClient

from booking_guard.attempt_logger import AttemptLogger
from booking_guard.config import Config
from booking_guard.errors import StoreUnavailableError
from booking_guard.lockout_guard import FailPolicy, LockoutGuard, LockoutPolicy
from booking_guard.main import create_app
from booking_guard.stores import FallbackAttemptStore, InMemoryAttemptStore
from booking_guard.verifier import StaticCodeVerifier


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore:
    def _fail(self, *args, **kwargs):
        raise StoreUnavailableError("connection refused")

    now = get = set = delete = update = purge_expired = _fail


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "attempts.log"


def make_client(guard, log_path, admin_token="secret"):
    config = Config(admin_token=admin_token, booking_codes={"42": "NOLS-ABC123"})
    app = create_app(
        config,
        guard=guard,
        verifier=StaticCodeVerifier(config.booking_codes),
        attempt_logger=AttemptLogger(str(log_path)),
    )
    return TestClient(app)


@pytest.fixture
def client(clock, log_path):
    guard = LockoutGuard(InMemoryAttemptStore(), LockoutPolicy(), clock=clock)
    test_client = make_client(guard, log_path)
    yield test_client
    test_client.close()


def verify(client, code, subject="42"):
    return client.post(f"/subjects/{subject}/booking-code/verify", json={"code": code})


class TestVerifyFlow:
    """End-to-end tests for the booking-code verification endpoints"""

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_status_for_new_subject(self, client):
        resp = client.get("/subjects/42/booking-code/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["locked"] == False
        assert data["remaining_attempts"] == 3

    def test_valid_code_is_verified(self, client):
        resp = verify(client, " nols-abc123 ")
        assert resp.status_code == 200
        assert resp.json()["result"] == "verified"

    def test_wrong_code_consumes_attempt(self, client):
        resp = verify(client, "WRONG")
        assert resp.status_code == 400
        data = resp.json()
        assert data["result"] == "invalid_code"
        assert data["remaining_attempts"] == 2
        assert data["locked"] == False

    def test_third_wrong_code_locks(self, client):
        verify(client, "WRONG")
        verify(client, "WRONG")
        resp = verify(client, "WRONG")

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "300"
        data = resp.json()
        assert data["result"] == "locked_out"
        assert data["locked"] == True
        assert data["locked_until"] == 1300.0

    def test_locked_subject_rejects_even_valid_code(self, client):
        for _ in range(3):
            verify(client, "WRONG")

        resp = verify(client, "NOLS-ABC123")
        assert resp.status_code == 429
        assert resp.json()["result"] == "locked_out"

    def test_lock_lapses_with_time(self, client, clock):
        for _ in range(3):
            verify(client, "WRONG")

        clock.now += 310
        resp = verify(client, "NOLS-ABC123")
        assert resp.status_code == 200

    def test_success_resets_failures(self, client):
        verify(client, "WRONG")
        verify(client, "WRONG")
        verify(client, "NOLS-ABC123")

        resp = client.get("/subjects/42/booking-code/status")
        assert resp.json()["remaining_attempts"] == 3

    def test_admin_clear_requires_token(self, client):
        resp = client.delete("/subjects/42/booking-code/failures", params={"admin_token": "nope"})
        assert resp.status_code == 403

    def test_admin_clear_unlocks(self, client):
        for _ in range(3):
            verify(client, "WRONG")

        resp = client.delete("/subjects/42/booking-code/failures", params={"admin_token": "secret"})
        assert resp.status_code == 200
        assert resp.json() == {"result": "cleared"}

        status = client.get("/subjects/42/booking-code/status").json()
        assert status["locked"] == False
        assert status["remaining_attempts"] == 3

    def test_blank_subject_is_rejected(self, client):
        resp = client.get("/subjects/%20/booking-code/status")
        assert resp.status_code == 422

    def test_empty_code_is_rejected(self, client):
        resp = verify(client, "")
        assert resp.status_code == 422

    def test_attempts_are_logged(self, client, log_path):
        verify(client, "WRONG")
        verify(client, "NOLS-ABC123")

        lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
        assert [line["result"] for line in lines] == ["invalid_code", "verified"]
        assert lines[0]["subject_id"] == "42"
        assert lines[0]["remaining_attempts"] == 2
        assert [line["attempt_id"] for line in lines] == [1, 2]


class TestStoreOutage:
    """End-to-end tests for the verification flow when the store is down"""

    def test_fail_closed_returns_503(self, log_path):
        client = make_client(LockoutGuard(BrokenStore(), fail_policy=FailPolicy.CLOSED), log_path)
        resp = verify(client, "NOLS-ABC123")
        assert resp.status_code == 503
        assert resp.json()["result"] == "store_unavailable"

    def test_fail_open_still_checks_code(self, log_path):
        client = make_client(LockoutGuard(BrokenStore(), fail_policy=FailPolicy.OPEN), log_path)

        assert verify(client, "NOLS-ABC123").status_code == 200
        resp = verify(client, "WRONG")
        assert resp.status_code == 400
        assert resp.json()["remaining_attempts"] == 3

    def test_fail_raise_maps_to_503(self, log_path):
        client = make_client(LockoutGuard(BrokenStore(), fail_policy=FailPolicy.RAISE), log_path)
        resp = client.get("/subjects/42/booking-code/status")
        assert resp.status_code == 503

    def test_fallback_store_marks_response_degraded(self, log_path):
        store = FallbackAttemptStore(BrokenStore(), InMemoryAttemptStore())
        client = make_client(LockoutGuard(store, clock=FakeClock()), log_path)

        resp = verify(client, "WRONG")
        assert resp.status_code == 400
        assert resp.json()["degraded"] == True
        assert resp.json()["remaining_attempts"] == 2

        line = json.loads(log_path.read_text(encoding="utf-8").splitlines()[0])
        assert line["degraded"] == True
