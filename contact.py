import logging
import re
from datetime import datetime
from typing import Dict, Optional

from security import REDACTED, sanitize_input
from storage import RegistrationStore

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

THANK_YOU = "Thank you for your inquiry. Our team will get back to you shortly."

# request field -> column
CONTACT_FIELDS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "location": "location",
    "projectStage": "project_stage",
    "budget": "budget",
    "aiUsage": "ai_usage",
    "employees": "employees",
    "experience": "experience",
    "message": "message",
}


class ContactRejected(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def submit_contact(store: RegistrationStore, fields: Dict[str, Optional[str]],
                   strict_writes: bool = False) -> str:
    """Validate and store one contact-form lead. No duplicate check: repeats are fine."""
    clean = {column: sanitize_input(fields.get(key)) for key, column in CONTACT_FIELDS.items()}

    if not clean["name"] or not clean["email"] or not clean["phone"]:
        raise ContactRejected("Name, Email, and Phone are required.")
    if not EMAIL_REGEX.match(clean["email"]):
        raise ContactRejected("Invalid email format.")

    if REDACTED in "".join(value for value in clean.values() if value):
        logger.warning(f"CONTACT: Malicious content detected from {clean['email']}")
        raise ContactRejected("Malicious content detected and blocked.")

    record = dict(clean, created_at=datetime.utcnow())
    try:
        store.insert_contact(record)
    except Exception as e:
        logger.error(f"CONTACT: Save failed for {clean['email']}: {e}", exc_info=True)
        if strict_writes:
            raise ContactRejected("Something went wrong. Please try again later.", status_code=500) from e
    else:
        logger.info("CONTACT: Inquiry queued for daily digest")
    return THANK_YOU
