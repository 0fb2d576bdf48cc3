"""
The /manual-register pipeline.

Steps run strictly in order and each may stop the submission:
bot heuristics, sanitization, format checks, duplicate lookup, identifier
assignment, persistence. Confirmation email is left to the caller so it can
run after the response is sent.
"""
import logging
import math
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from config import Settings
from security import contains_redaction, sanitize_input, sanitize_object
from storage import Predicate, RegistrationConflict, RegistrationStore

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_REGEX = re.compile(r"^\+?[0-9\s-]{10,}$")

SOLO_TEAM = "solo"
TEST_PAYMENT_SKIP = "TEST_PAYMENT_SKIP"
POST_GRAD = "POST GRAD"
MEMBER_SLOTS = ("member1", "member2")
PERSON_FIELDS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "college": "college",
    "year": "year",
    "shirt": "shirtSize",
}

PAYMENT_METHOD = "MANUAL_Payment"
PAYMENT_MODE = "QR_CODE_MODE"
AMOUNT = "350"
PENDING_VERIFICATION = "PENDING_VERIFICATION"


class SubmissionRejected(Exception):
    """Client-side problem: surfaced as a 400."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SubmissionFailed(Exception):
    """Server-side problem the operator asked not to swallow: a 500."""


@dataclass
class RegistrationReceipt:
    registration_id: str
    leader_email: str
    leader_name: str
    team_name: str


def drive_link_regex(hosts: List[str]):
    alternatives = "|".join(re.escape(host) for host in hosts)
    return re.compile(rf"^(https?://)?({alternatives})/.+$")


def _text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    return str(value)


def _team_size(form: Dict) -> Optional[int]:
    try:
        size = int(form.get("teamSize"))
    except (TypeError, ValueError):
        return None
    return size if 1 <= size <= 3 else None


def _section(form: Dict, name: str) -> Dict:
    section = form.get(name)
    return section if isinstance(section, dict) else {}


def duplicate_predicates(leader_email: str, team_name: str,
                         transaction_id: Optional[str], device_id: Optional[str]) -> List[Predicate]:
    """Conditions for the duplicate lookup; blank or exempt values are dropped."""
    candidates = [
        Predicate("leader_email", leader_email),
        Predicate("team_name", team_name if team_name != SOLO_TEAM else ""),
        Predicate("transaction_id", transaction_id if transaction_id != TEST_PAYMENT_SKIP else ""),
        Predicate("device_id", device_id),
    ]
    return [p for p in candidates if p.value]


def first_conflict(rows: List[Dict], leader_email: str, team_name: str,
                   transaction_id: Optional[str], device_id: Optional[str]) -> Optional[str]:
    """Message for the highest-priority uniqueness rule the rows violate."""
    if not rows:
        return None

    def norm(value):
        return (value or "").strip().lower()

    if any(norm(r.get("leader_email")) == leader_email for r in rows):
        return "Email already registered."
    if team_name and team_name != SOLO_TEAM and any(norm(r.get("team_name")) == team_name for r in rows):
        return "Team name taken."
    if device_id and any(r.get("device_id") == device_id for r in rows):
        return "Only one registration per device."
    if transaction_id and transaction_id != TEST_PAYMENT_SKIP and any(
            r.get("transaction_id") == transaction_id for r in rows):
        return "Transaction ID already used."
    return None


def check_participants(form: Dict) -> None:
    """Same checks the registration wizard runs before posting."""
    size = _team_size(form) or 1
    labels = ["LEADER", "AGENT 2", "AGENT 3"]
    for index, slot in enumerate(("leader",) + MEMBER_SLOTS[:size - 1]):
        person = _section(form, slot)
        year = _text(person.get("year"))
        missing = [f for f in ("name", "email", "phone") if not _text(person.get(f))]
        if missing or not year or (year != POST_GRAD and not _text(person.get("college"))):
            raise SubmissionRejected(f"Please fill all required fields for {labels[index]}.")
        if not EMAIL_REGEX.match(_text(person.get("email"))):
            raise SubmissionRejected(f"Invalid {labels[index]} email format.")
        if not PHONE_REGEX.match(_text(person.get("phone"))):
            raise SubmissionRejected(f"Invalid {labels[index]} phone number (min 10 digits).")

    project_idea = _text(form.get("projectIdea")) or ""
    if len(project_idea) < 10:
        raise SubmissionRejected("Please provide a brief project idea (min 10 chars).")
    if not _text(form.get("driveLink")):
        raise SubmissionRejected("Please provide a PPT or project drive link.")


def _person_columns(prefix: str, person: Dict) -> Dict:
    columns = {f"{prefix}_{column}": _text(person.get(key)) for column, key in PERSON_FIELDS.items()}
    if columns[f"{prefix}_year"] == POST_GRAD:
        # Not applicable, whatever the form carried over
        columns[f"{prefix}_college"] = None
    return columns


class RegistrationPipeline:

    def __init__(self, store: RegistrationStore, settings: Settings,
                 clock: Callable[[], float] = time.time):
        self._store = store
        self._settings = settings
        self._clock = clock
        self._drive_link = drive_link_regex(settings.drive_link_hosts)

    def submit(self, body: Dict) -> RegistrationReceipt:
        self._check_bot(body.get("honeypot"), body.get("duration"))

        raw_form = body.get("formData")
        form = sanitize_object(raw_form if isinstance(raw_form, dict) else {})
        transaction_id = _text(sanitize_input(body.get("transactionId"))) or ""
        device_id = _text(sanitize_input(body.get("deviceId"))) or None

        if contains_redaction(form) or contains_redaction([transaction_id, device_id]):
            logger.warning("REGISTRATION: Malicious content detected and blocked")
            raise SubmissionRejected("Malicious content detected and blocked.")

        leader = _section(form, "leader")
        leader_email = (_text(leader.get("email")) or "").lower()
        team_name = (_text(form.get("teamName")) or "").lower()
        self._check_format(form, leader_email)

        self._check_duplicates(leader_email, team_name, transaction_id, device_id)

        now_ms = int(self._clock() * 1000)
        registration_id = f"REG-{now_ms}"
        if transaction_id and transaction_id != TEST_PAYMENT_SKIP:
            final_transaction_id = transaction_id
        else:
            final_transaction_id = f"WAITLIST-{now_ms}-{random.randint(0, 999)}"

        record = self._build_record(form, registration_id, leader_email, final_transaction_id, device_id)
        self._persist(record)

        return RegistrationReceipt(
            registration_id=registration_id,
            leader_email=leader_email,
            leader_name=record["leader_name"] or "",
            team_name=record["team_name"],
        )

    def _check_bot(self, honeypot, duration):
        if honeypot:
            logger.warning(f"REGISTRATION: Bot blocked, honeypot filled: {str(honeypot)[:50]!r}")
            raise SubmissionRejected("System Error: Validation Failed (Code: 101).")
        is_number = (isinstance(duration, (int, float)) and not isinstance(duration, bool)
                     and math.isfinite(duration))
        if not is_number or duration < self._settings.min_submit_ms:
            logger.warning(f"REGISTRATION: Bot blocked, submission too fast: {duration!r}ms")
            raise SubmissionRejected("Submission too fast.")

    def _check_format(self, form, leader_email):
        drive_link = form.get("driveLink")
        if drive_link and not (isinstance(drive_link, str) and self._drive_link.match(drive_link.strip())):
            raise SubmissionRejected("Invalid drive link format.")
        if not EMAIL_REGEX.match(leader_email):
            raise SubmissionRejected("Invalid email address.")
        if self._settings.strict_participant_checks:
            check_participants(form)

    def _check_duplicates(self, leader_email, team_name, transaction_id, device_id):
        predicates = duplicate_predicates(leader_email, team_name, transaction_id, device_id)
        try:
            rows = self._store.find_duplicates(predicates)
        except Exception as e:
            if self._settings.strict_duplicate_check:
                logger.error(f"REGISTRATION: Duplicate check failed: {e}", exc_info=True)
                raise SubmissionFailed("Duplicate check unavailable.") from e
            logger.warning(f"REGISTRATION: Duplicate check failed, continuing: {e}")
            return

        conflict = first_conflict(rows, leader_email, team_name, transaction_id, device_id)
        if conflict:
            logger.warning(f"REGISTRATION: Rejected {leader_email}: {conflict}")
            raise SubmissionRejected(conflict)

    def _build_record(self, form, registration_id, leader_email, transaction_id, device_id):
        record = {
            "registration_id": registration_id,
            "team_name": _text(form.get("teamName")) or "Solo",
            "type": _text(form.get("type")),
            "track": _text(form.get("track")),
        }
        record.update(_person_columns("leader", _section(form, "leader")))
        record["leader_email"] = leader_email

        size = _team_size(form)
        for index, slot in enumerate(MEMBER_SLOTS, start=2):
            person = _section(form, slot)
            # Slots beyond the declared team size are leftovers from the wizard
            if person and (size is None or index <= size):
                record.update(_person_columns(slot, person))

        record.update({
            "project_idea": _text(form.get("projectIdea")),
            "why_participate": _text(form.get("whyParticipate")),
            "drive_link": _text(form.get("driveLink")),
            "transaction_id": transaction_id,
            "payment_method": PAYMENT_METHOD,
            "mode": PAYMENT_MODE,
            "amount": AMOUNT,
            "device_id": device_id,
            "status": PENDING_VERIFICATION,
            "created_at": datetime.utcnow(),
        })
        return record

    def _persist(self, record):
        try:
            self._store.insert_registration(record)
        except RegistrationConflict as e:
            logger.warning(f"REGISTRATION: Storage refused {record['registration_id']}: {e}")
            raise SubmissionRejected("Registration conflicts with an existing entry.") from e
        except Exception as e:
            logger.error(f"REGISTRATION: Save failed for {record['registration_id']}: {e}", exc_info=True)
            if self._settings.strict_writes:
                raise SubmissionFailed("Registration could not be saved.") from e
