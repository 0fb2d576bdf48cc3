import asyncio
import json
from unittest.mock import MagicMock

import pytest

from conftest import FakeMailer
from otp import (
    MemoryOtpStore,
    OtpChallenge,
    OtpRejected,
    OtpService,
    RedisOtpStore,
    generate_code,
)


class Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


class Registrations:
    def __init__(self, emails=(), broken=False):
        self.emails = set(emails)
        self.broken = broken

    def email_registered(self, email):
        if self.broken:
            raise RuntimeError("database unreachable")
        return email in self.emails


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def otp_store():
    return MemoryOtpStore()


def make_service(otp_store, clock, registered=(), mailer=None, broken=False):
    return OtpService(otp_store, Registrations(registered, broken), mailer or FakeMailer(),
                      ttl_seconds=600, clock=clock)


def issue(service, email="agent@college.edu", name="Agent"):
    asyncio.run(service.request_code(email, name))


def test_generated_codes_are_six_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert 100000 <= int(code) <= 999999


def test_request_stores_and_sends_code(otp_store, clock):
    mailer = FakeMailer()
    service = make_service(otp_store, clock, mailer=mailer)
    issue(service, email="  Agent@College.edu ")

    challenge = otp_store.get("agent@college.edu")
    assert challenge.expires_at == clock.now + 600
    assert mailer.sent[0]["to"] == "agent@college.edu"
    assert mailer.sent[0]["code"] == challenge.code


def test_request_for_registered_email_is_rejected_before_any_code(otp_store, clock):
    mailer = FakeMailer()
    service = make_service(otp_store, clock, registered={"taken@college.edu"}, mailer=mailer)

    with pytest.raises(OtpRejected) as exc:
        asyncio.run(service.request_code("taken@college.edu", "Agent"))
    assert exc.value.message == "Email already registered."
    assert otp_store.get("taken@college.edu") is None
    assert mailer.sent == []


@pytest.mark.parametrize("email, message", [
    (None, "Email is required."),
    ("   ", "Email is required."),
    ("not-an-email", "Invalid email address."),
])
def test_request_validates_email(otp_store, clock, email, message):
    with pytest.raises(OtpRejected) as exc:
        asyncio.run(make_service(otp_store, clock).request_code(email))
    assert exc.value.message == message


def test_send_failure_surfaces_as_server_error(otp_store, clock):
    service = make_service(otp_store, clock, mailer=FakeMailer(fail=True))
    with pytest.raises(OtpRejected) as exc:
        issue(service)
    assert exc.value.status_code == 500


def test_lookup_failure_surfaces_as_server_error(otp_store, clock):
    service = make_service(otp_store, clock, broken=True)
    with pytest.raises(OtpRejected) as exc:
        issue(service)
    assert exc.value.status_code == 500
    assert otp_store.get("agent@college.edu") is None


def test_reissue_overwrites_previous_code(otp_store, clock):
    service = make_service(otp_store, clock)
    issue(service)
    first = otp_store.get("agent@college.edu").code
    clock.now += 60
    issue(service)
    second = otp_store.get("agent@college.edu")

    assert second.expires_at == clock.now + 600
    if first != second.code:
        with pytest.raises(OtpRejected):
            service.verify_code("agent@college.edu", first)
    service.verify_code("agent@college.edu", second.code)


def test_correct_code_verifies_exactly_once(otp_store, clock):
    service = make_service(otp_store, clock)
    issue(service)
    code = otp_store.get("agent@college.edu").code

    service.verify_code("agent@college.edu", code)

    with pytest.raises(OtpRejected) as exc:
        service.verify_code("agent@college.edu", code)
    assert exc.value.message == "Request a code first."


def test_wrong_code_keeps_challenge_for_retry(otp_store, clock):
    service = make_service(otp_store, clock)
    otp_store.set("agent@college.edu", OtpChallenge(code="654321", expires_at=clock.now + 600))

    with pytest.raises(OtpRejected) as exc:
        service.verify_code("agent@college.edu", "123456")
    assert exc.value.message == "Invalid code. Access denied."
    assert otp_store.get("agent@college.edu") is not None

    service.verify_code("agent@college.edu", "654321")


def test_expired_code_is_deleted(otp_store, clock):
    service = make_service(otp_store, clock)
    issue(service)
    code = otp_store.get("agent@college.edu").code

    clock.now += 601
    with pytest.raises(OtpRejected) as exc:
        service.verify_code("agent@college.edu", code)
    assert exc.value.message == "Code expired. Request a new one."
    assert otp_store.get("agent@college.edu") is None

    with pytest.raises(OtpRejected) as exc:
        service.verify_code("agent@college.edu", code)
    assert exc.value.message == "Request a code first."


def test_code_is_valid_until_the_expiry_instant(otp_store, clock):
    service = make_service(otp_store, clock)
    otp_store.set("agent@college.edu", OtpChallenge(code="654321", expires_at=clock.now + 600))
    clock.now += 600
    service.verify_code("agent@college.edu", 654321)


def test_redis_store_round_trip_uses_ttl(clock):
    redis = MagicMock()
    store = RedisOtpStore(redis, clock=clock)

    store.set("agent@college.edu", OtpChallenge(code="123456", expires_at=clock.now + 600))
    key, ttl, payload = redis.setex.call_args.args
    assert key == "otp:agent@college.edu"
    assert ttl == 660
    assert json.loads(payload) == {"code": "123456", "expires_at": clock.now + 600}

    redis.get.return_value = payload
    assert store.get("agent@college.edu") == OtpChallenge(code="123456", expires_at=clock.now + 600)

    store.delete("agent@college.edu")
    redis.delete.assert_called_with("otp:agent@college.edu")


def test_redis_store_discards_garbage(clock):
    redis = MagicMock()
    redis.get.return_value = "not json"
    store = RedisOtpStore(redis, clock=clock)
    assert store.get("agent@college.edu") is None
    redis.delete.assert_called_with("otp:agent@college.edu")


def test_redis_store_missing_key(clock):
    redis = MagicMock()
    redis.get.return_value = None
    assert RedisOtpStore(redis, clock=clock).get("agent@college.edu") is None


def test_otp_routes_end_to_end(client, mailer, store):
    response = client.post("/send-otp", json={"email": "Agent@College.edu", "name": "Agent"})
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    code = mailer.sent[-1]["code"]

    response = client.post("/api/verify-otp", json={"email": "agent@college.edu", "otp": "000000" if code != "000000" else "111111"})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid code. Access denied."}

    response = client.post("/verify-otp", json={"email": "agent@college.edu", "otp": code})
    assert response.json() == {"status": "success", "verified": True}

    response = client.post("/verify-otp", json={"email": "agent@college.edu", "otp": code})
    assert response.status_code == 400
    assert response.json() == {"error": "Request a code first."}


def test_send_otp_refuses_registered_email(client, mailer, store):
    store.insert_registration({
        "registration_id": "REG-1",
        "team_name": "Solo",
        "leader_email": "taken@college.edu",
        "transaction_id": "TXN-1",
        "payment_method": "MANUAL_Payment",
        "mode": "QR_CODE_MODE",
        "amount": "350",
    })
    response = client.post("/send-otp", json={"email": "taken@college.edu"})
    assert response.status_code == 400
    assert response.json() == {"error": "Email already registered."}
    assert mailer.sent == []
