from datetime import datetime
from typing import Dict, List, NamedTuple
import logging

from pony.orm import db_session, desc
from pony.orm.core import CacheIndexError, TransactionIntegrityError

from models import Registration, ContactInquiry

logger = logging.getLogger(__name__)

DUPLICATE_FIELDS = ("leader_email", "team_name", "transaction_id", "device_id")

# $name is bound by Pony as a query parameter, never interpolated
DUPLICATE_CLAUSES = {
    "leader_email": "leader_email = $leader_email",
    "team_name": "lower(team_name) = $team_name",
    "transaction_id": "transaction_id = $transaction_id",
    "device_id": "device_id = $device_id",
}


class Predicate(NamedTuple):
    field: str
    value: str


class RegistrationConflict(Exception):
    """The database refused a registration because of a uniqueness rule."""


class RegistrationStore:
    """Persistence seam used by the request handlers and the digest job."""

    def insert_registration(self, record: Dict) -> None:
        raise NotImplementedError

    def find_duplicates(self, predicates: List[Predicate]) -> List[Dict]:
        raise NotImplementedError

    def email_registered(self, email: str) -> bool:
        raise NotImplementedError

    def insert_contact(self, record: Dict) -> None:
        raise NotImplementedError

    def contacts_since(self, cutoff: datetime) -> List[Dict]:
        raise NotImplementedError


class PonyStore(RegistrationStore):

    def insert_registration(self, record):
        try:
            with db_session:
                Registration(**record)
        except (TransactionIntegrityError, CacheIndexError) as e:
            raise RegistrationConflict(str(e)) from e
        logger.info(f"STORE: Saved registration {record.get('registration_id')}")

    @db_session
    def find_duplicates(self, predicates):
        """Rows matching ANY predicate, fetched with one OR-combined query."""
        if not predicates:
            return []
        clauses = []
        params = {}
        for predicate in predicates:
            if predicate.field not in DUPLICATE_CLAUSES:
                raise ValueError(f"Unsupported duplicate field: {predicate.field}")
            clauses.append(DUPLICATE_CLAUSES[predicate.field])
            params[predicate.field] = predicate.value

        sql = "SELECT * FROM registration WHERE " + " OR ".join(clauses)
        query = Registration.select_by_sql(sql, globals={}, locals=params)
        return [reg.to_dict(only=list(DUPLICATE_FIELDS)) for reg in query]

    @db_session
    def email_registered(self, email):
        return Registration.exists(leader_email=email)

    def insert_contact(self, record):
        with db_session:
            ContactInquiry(**record)
        logger.info(f"STORE: Saved contact inquiry from {record.get('email')}")

    @db_session
    def contacts_since(self, cutoff):
        query = ContactInquiry.select(lambda c: c.created_at >= cutoff).order_by(desc(ContactInquiry.created_at))
        return [c.to_dict(exclude=["id"]) for c in query]
