from dataclasses import dataclass, field
from typing import List, Optional
import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_ORIGINS = [
    "https://vexstorm26.datavex.ai",
    "https://datavex.ai",
    "https://www.datavex.ai",
    "http://localhost:5173",  # Vite default
    "http://localhost:5500",
    "http://127.0.0.1:5500",
]

DEFAULT_DRIVE_HOSTS = [
    "drive.google.com",
    "docs.google.com",
    "forms.gle",
    "files.datavex.ai",
]


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y")


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"CONFIG: {name}={raw!r} is not an integer, using {default}")
        return default


def _list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_seconds: int
    message: str


@dataclass(frozen=True)
class Settings:
    """
    Every tunable of the service in one place.

    Defaults match the production deployment so a bare environment still
    boots; secrets (API keys) default to empty, which switches the mailer to
    log-only mode and disables the admin routes.
    """
    env: str = "dev"
    service_name: str = "VexStorm 26 Registration Backend"
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ORIGINS))
    database_url: str = "sqlite:///./vexstorm.db"
    max_body_bytes: int = 10 * 1024

    general_limit: RateLimit = RateLimit(500, 15 * 60, "Too many requests, please try again later.")
    auth_limit: RateLimit = RateLimit(20, 60 * 60, "Too many attempts. Please wait a while.")
    registration_limit: RateLimit = RateLimit(
        500, 24 * 60 * 60, "Registration limit exceeded for this device/network."
    )
    otp_limit: RateLimit = RateLimit(50, 15 * 60, "Too many OTP requests. Please try again in 15 minutes.")

    mailersend_api_key: str = ""
    sender_email: str = "noreply@datavex.ai"
    sender_name: str = "VexStorm 26"
    contact_receiver: str = "info@datavex.ai"

    digest_cron: str = "0 9 * * *"
    digest_utc_offset_minutes: int = 330  # IST
    scheduler_enabled: bool = False

    otp_ttl_seconds: int = 10 * 60
    otp_redis_url: Optional[str] = None

    min_submit_ms: int = 5000
    drive_link_hosts: List[str] = field(default_factory=lambda: list(DEFAULT_DRIVE_HOSTS))
    send_confirmation_email: bool = False
    strict_writes: bool = False
    strict_duplicate_check: bool = False
    strict_participant_checks: bool = False
    debug_errors: bool = False

    admin_api_key: str = ""
    log_file: Optional[str] = "logs/app.log"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        env = os.getenv("ENV", "dev").lower()
        if env not in ("dev", "prod"):
            logger.warning(f"CONFIG: unknown ENV '{env}', falling back to 'dev'")
            env = "dev"

        origins = _list("ALLOWED_ORIGINS", DEFAULT_ORIGINS)
        client_url = os.getenv("CLIENT_URL")
        if client_url and client_url not in origins:
            origins.append(client_url)

        defaults = cls()

        def limit(prefix: str, base: RateLimit) -> RateLimit:
            return RateLimit(
                max_requests=_int(f"RATE_LIMIT_{prefix}_MAX", base.max_requests),
                window_seconds=_int(f"RATE_LIMIT_{prefix}_WINDOW", base.window_seconds),
                message=base.message,
            )

        mailersend_api_key = os.getenv("MAILERSEND_API_KEY", "")
        if not mailersend_api_key:
            logger.warning("CONFIG: MAILERSEND_API_KEY not set, emails will only be logged")

        admin_api_key = os.getenv("ADMIN_API_KEY", "")
        if env == "prod" and not admin_api_key:
            logger.warning("CONFIG: ADMIN_API_KEY not set, /admin routes are disabled")

        return cls(
            env=env,
            service_name=os.getenv("SERVICE_NAME", defaults.service_name),
            allowed_origins=origins,
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            max_body_bytes=_int("MAX_BODY_BYTES", defaults.max_body_bytes),
            general_limit=limit("GENERAL", defaults.general_limit),
            auth_limit=limit("AUTH", defaults.auth_limit),
            registration_limit=limit("REGISTRATION", defaults.registration_limit),
            otp_limit=limit("OTP", defaults.otp_limit),
            mailersend_api_key=mailersend_api_key,
            sender_email=os.getenv("EMAIL_HACK_FROM") or os.getenv("EMAIL_FROM") or defaults.sender_email,
            sender_name=os.getenv("EMAIL_SENDER_NAME", defaults.sender_name),
            contact_receiver=os.getenv("EMAIL_CONTACT_TO", defaults.contact_receiver),
            digest_cron=os.getenv("DIGEST_CRON", defaults.digest_cron),
            digest_utc_offset_minutes=_int("DIGEST_UTC_OFFSET_MINUTES", defaults.digest_utc_offset_minutes),
            # Render sets RENDER on every service, which is where the digest should run
            scheduler_enabled=_flag("ENABLE_SCHEDULER") or bool(os.getenv("RENDER")),
            otp_ttl_seconds=_int("OTP_TTL_SECONDS", defaults.otp_ttl_seconds),
            otp_redis_url=os.getenv("OTP_REDIS_URL") or None,
            min_submit_ms=_int("MIN_SUBMIT_MS", defaults.min_submit_ms),
            drive_link_hosts=_list("DRIVE_LINK_HOSTS", DEFAULT_DRIVE_HOSTS),
            send_confirmation_email=_flag("SEND_CONFIRMATION_EMAIL"),
            strict_writes=_flag("STRICT_WRITES"),
            strict_duplicate_check=_flag("STRICT_DUPLICATE_CHECK"),
            strict_participant_checks=_flag("STRICT_PARTICIPANT_CHECKS"),
            debug_errors=_flag("DEBUG_ERRORS"),
            admin_api_key=admin_api_key,
            log_file=os.getenv("LOG_FILE", defaults.log_file) or None,
        )
