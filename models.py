from pony.orm import Database, Required, Optional, PrimaryKey, db_session
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

db = Database()

class Registration(db.Entity):
    _table_ = 'registration'
    id = PrimaryKey(int, auto=True)
    registration_id = Required(str)
    team_name = Required(str, default='Solo')
    type = Optional(str, nullable=True)
    track = Optional(str, nullable=True)

    leader_name = Optional(str, nullable=True)
    leader_email = Required(str, unique=True)
    leader_phone = Optional(str, nullable=True)
    leader_college = Optional(str, nullable=True)
    leader_year = Optional(str, nullable=True)
    leader_shirt = Optional(str, nullable=True)

    member1_name = Optional(str, nullable=True)
    member1_email = Optional(str, nullable=True)
    member1_phone = Optional(str, nullable=True)
    member1_college = Optional(str, nullable=True)
    member1_year = Optional(str, nullable=True)
    member1_shirt = Optional(str, nullable=True)

    member2_name = Optional(str, nullable=True)
    member2_email = Optional(str, nullable=True)
    member2_phone = Optional(str, nullable=True)
    member2_college = Optional(str, nullable=True)
    member2_year = Optional(str, nullable=True)
    member2_shirt = Optional(str, nullable=True)

    project_idea = Optional(str, nullable=True)
    why_participate = Optional(str, nullable=True)
    drive_link = Optional(str, nullable=True)

    transaction_id = Required(str, unique=True)
    payment_method = Required(str)
    mode = Required(str)
    amount = Required(str)
    device_id = Optional(str, unique=True, nullable=True)
    status = Required(str, default='PENDING_VERIFICATION')
    created_at = Required(datetime, default=datetime.utcnow)

class ContactInquiry(db.Entity):
    _table_ = 'contact_inquiries'
    id = PrimaryKey(int, auto=True)
    name = Required(str)
    email = Required(str)
    phone = Required(str)
    company = Optional(str, nullable=True)
    location = Optional(str, nullable=True)
    project_stage = Optional(str, nullable=True)
    budget = Optional(str, nullable=True)
    ai_usage = Optional(str, nullable=True)
    employees = Optional(str, nullable=True)
    experience = Optional(str, nullable=True)
    message = Optional(str, nullable=True)
    created_at = Required(datetime, default=datetime.utcnow, index=True)

# Pony cannot declare an expression index, so the case-insensitive team name
# rule is created by hand. 'solo' teams are exempt.
INDEXES = [
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_registration_team_name "
    "ON registration (lower(team_name)) WHERE lower(team_name) <> 'solo'",
]

def ensure_indexes():
    with db_session:
        for statement in INDEXES:
            try:
                db.execute(statement)
                logger.info(f"DB: Applied/Checked index: {statement.split(' ON ')[0]}")
            except Exception as e:
                logger.warning(f"DB: Index warning: {e}")

def _sqlite_path(url):
    path = url[len('sqlite:///'):]
    return path or ':memory:'

def init_db(provider_or_url='postgres', safe_mode=True, **kwargs):
    dsn = None
    provider = provider_or_url

    # Check if first arg is a URL
    if provider_or_url.startswith('postgres://') or provider_or_url.startswith('postgresql://'):
        provider = 'postgres'
        dsn = provider_or_url
        if dsn.startswith('postgres://'):
            dsn = dsn.replace('postgres://', 'postgresql://', 1)
    elif provider_or_url.startswith('sqlite:///'):
        provider = 'sqlite'
        kwargs.setdefault('filename', _sqlite_path(provider_or_url))
        kwargs.setdefault('create_db', True)

    try:
        if dsn:
            logger.info(f"DB: Binding with URL (len={len(dsn)})...")
            # Managed Postgres only accepts TLS connections
            if 'sslmode=' not in dsn:
                separator = '&' if '?' in dsn else '?'
                dsn += f"{separator}sslmode=require"
            db.bind(provider='postgres', dsn=dsn)
        else:
            db.bind(provider=provider, **kwargs)

        db.generate_mapping(create_tables=True)
        logger.info("DB: PonyORM binding and mapping successful")
    except Exception as e:
        logger.error(f"DB: PonyORM binding failed: {e}")
        if not safe_mode:
            raise
        return False

    ensure_indexes()
    return True
