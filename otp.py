"""
Email one-time codes.

A challenge is a 6-digit code plus an absolute expiry, keyed by the
normalized email address. The store behind it is swappable: MemoryOtpStore
lives and dies with the process, RedisOtpStore shares codes between workers.
"""
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from security import sanitize_input

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class OtpChallenge:
    code: str
    expires_at: float


class OtpRejected(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class OtpStore:
    def get(self, email: str) -> Optional[OtpChallenge]:
        raise NotImplementedError

    def set(self, email: str, challenge: OtpChallenge) -> None:
        raise NotImplementedError

    def delete(self, email: str) -> None:
        raise NotImplementedError


class MemoryOtpStore(OtpStore):
    """Process-local store. Codes are lost on restart."""

    def __init__(self):
        self._challenges: Dict[str, OtpChallenge] = {}

    def get(self, email):
        return self._challenges.get(email)

    def set(self, email, challenge):
        self._challenges[email] = challenge

    def delete(self, email):
        self._challenges.pop(email, None)


class RedisOtpStore(OtpStore):
    """
    Shared store for multi-worker deployments.

    Keys are otp:{email} holding {"code", "expires_at"} as JSON. Redis also
    gets a TTL slightly past the expiry so abandoned codes clean themselves up;
    the expiry check itself stays in OtpService so both stores behave alike.
    """

    def __init__(self, redis: Redis, key_prefix: str = "otp:", grace_seconds: int = 60,
                 clock: Callable[[], float] = time.time):
        self._redis = redis
        self._prefix = key_prefix
        self._grace = grace_seconds
        self._clock = clock

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisOtpStore":
        logger.info(f"OTP: Using Redis store at {redis_url.split('@')[-1]}")
        return cls(Redis.from_url(redis_url, decode_responses=True))

    def _key(self, email):
        return f"{self._prefix}{email}"

    def get(self, email):
        raw = self._redis.get(self._key(email))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return OtpChallenge(code=str(data["code"]), expires_at=float(data["expires_at"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"OTP: Discarding unreadable challenge for {email}: {e}")
            self.delete(email)
            return None

    def set(self, email, challenge):
        ttl = max(1, int(challenge.expires_at - self._clock()) + self._grace)
        payload = json.dumps({"code": challenge.code, "expires_at": challenge.expires_at})
        self._redis.setex(self._key(email), ttl, payload)

    def delete(self, email):
        self._redis.delete(self._key(email))


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class OtpService:
    """Issues and checks codes. Verifying a code does not gate registration."""

    def __init__(self, store: OtpStore, registrations, mailer, ttl_seconds: int = 600,
                 clock: Callable[[], float] = time.time):
        self._store = store
        self._registrations = registrations
        self._mailer = mailer
        self._ttl = ttl_seconds
        self._clock = clock

    async def request_code(self, email: Optional[str], name: Optional[str] = None) -> None:
        key = normalize_email(email)
        if not key:
            raise OtpRejected("Email is required.")
        if not EMAIL_REGEX.match(key):
            raise OtpRejected("Invalid email address.")

        try:
            already_registered = self._registrations.email_registered(key)
        except Exception as e:
            logger.error(f"OTP: Registration lookup failed for {key}: {e}", exc_info=True)
            raise OtpRejected("Failed to send verification email.", status_code=500) from e
        if already_registered:
            logger.warning(f"OTP: Refused code for already registered {key}")
            raise OtpRejected("Email already registered.")

        code = generate_code()
        self._store.set(key, OtpChallenge(code=code, expires_at=self._clock() + self._ttl))

        result = await self._mailer.send_otp(key, sanitize_input(name), code, self._ttl)
        if not result.ok:
            raise OtpRejected("Failed to send verification email.", status_code=500)
        logger.info(f"OTP: Code issued for {key}")

    def verify_code(self, email: Optional[str], code) -> None:
        key = normalize_email(email)
        try:
            challenge = self._store.get(key)
        except RedisError as e:
            logger.error(f"OTP: Store unavailable while verifying {key}: {e}")
            raise OtpRejected("Verification temporarily unavailable.", status_code=500) from e

        if challenge is None:
            raise OtpRejected("Request a code first.")
        if self._clock() > challenge.expires_at:
            self._store.delete(key)
            raise OtpRejected("Code expired. Request a new one.")
        if str(code).strip() != challenge.code:
            raise OtpRejected("Invalid code. Access denied.")

        # Single use
        self._store.delete(key)
        logger.info(f"OTP: Verified {key}")
