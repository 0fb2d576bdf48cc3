import os
import tempfile

import pytest
from fastapi.testclient import TestClient
from pony.orm import db_session

# Keep Settings.from_env() (used when main is imported) away from real services
os.environ.setdefault("MAILERSEND_API_KEY", "")
os.environ.setdefault("LOG_FILE", "")

from config import RateLimit, Settings
from mailer import SendResult
from models import db, init_db, Registration, ContactInquiry
from storage import PonyStore

DB_FILE = os.path.join(tempfile.mkdtemp(prefix="vexstorm-test-"), "test.sqlite")


class FakeMailer:
    """Records every message instead of sending it."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, to, subject, html, text=None, from_name=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        if self.fail:
            return SendResult(ok=False, error="mail provider down")
        return SendResult(ok=True)

    async def send_otp(self, to, name, code, ttl_seconds):
        self.sent.append({"to": to, "subject": "otp", "code": code, "name": name})
        if self.fail:
            return SendResult(ok=False, error="mail provider down")
        return SendResult(ok=True)

    async def send_registration_confirmation(self, to, leader_name, team_name, registration_id):
        return await self.send(to, "confirmation", registration_id)


@pytest.fixture(scope="session", autouse=True)
def bound_db():
    if db.provider is None:
        init_db("sqlite", safe_mode=False, filename=DB_FILE, create_db=True)
    yield db


@pytest.fixture(autouse=True)
def clean_tables(bound_db):
    with db_session:
        Registration.select().delete(bulk=True)
        ContactInquiry.select().delete(bulk=True)
    yield


@pytest.fixture
def settings():
    return Settings(log_file=None, scheduler_enabled=False, admin_api_key="admin-key")


@pytest.fixture
def store():
    return PonyStore()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def make_client(store, mailer):
    def _make(settings, **overrides):
        from main import create_app
        app = create_app(settings=settings, store=overrides.pop("store", store),
                         mailer=overrides.pop("mailer", mailer), **overrides)
        return TestClient(app)
    return _make


@pytest.fixture
def client(make_client, settings):
    return make_client(settings)


def tight(limit: RateLimit, max_requests: int) -> RateLimit:
    return RateLimit(max_requests, limit.window_seconds, limit.message)


def registration_body(email="leader@college.edu", team="Neural Ninjas", **extra):
    body = {
        "formData": {
            "type": "team",
            "teamName": team,
            "track": "Bio-Genesis",
            "teamSize": 2,
            "leader": {
                "name": "Asha Rao",
                "email": email,
                "phone": "+91 98765 43210",
                "college": "Sahyadri College",
                "year": "3RD YEAR",
                "shirtSize": "M",
            },
            "member1": {
                "name": "Ravi Kumar",
                "email": "ravi@college.edu",
                "phone": "9876543211",
                "college": "Sahyadri College",
                "year": "3RD YEAR",
                "shirtSize": "L",
            },
            "member2": {"name": "", "email": "", "phone": "", "college": "", "year": ""},
            "projectIdea": "Triage assistant for rural clinics",
            "whyParticipate": "To ship something real",
            "driveLink": "https://drive.google.com/file/d/abc123/view",
        },
        "transactionId": "TEST_PAYMENT_SKIP",
        "honeypot": "",
        "duration": 42000,
    }
    body.update(extra)
    return body
