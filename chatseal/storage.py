import logging
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from chatseal.config import settings

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("tenants", "messages")


def _connect_args(url: str) -> dict:
    # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    try:
        # Import models to register them with Base.metadata
        from chatseal import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            inspector = inspect(conn)
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Tenant Repository Functions
# =============================================================================

def get_tenant(db: Session, tenant_id: str):
    from chatseal.models import Tenant

    if not tenant_id:
        return None
    return db.query(Tenant).filter(Tenant.id == tenant_id).first()


def get_tenant_by_waba_id(db: Session, waba_id: str):
    from chatseal.models import Tenant

    return db.query(Tenant).filter(Tenant.waba_id == waba_id).first()


def get_tenant_by_phone_number_id(db: Session, phone_number_id: Optional[str]):
    """Resolve the tenant a webhook delivery is addressed to."""
    from chatseal.models import Tenant

    if not phone_number_id:
        return None
    return (
        db.query(Tenant)
        .filter(Tenant.phone_number_id == str(phone_number_id))
        .order_by(Tenant.updated_at.desc())
        .first()
    )


def list_tenants(db: Session) -> list:
    from chatseal.models import Tenant

    return db.query(Tenant).order_by(Tenant.created_at.asc()).all()


def upsert_tenant(
    db: Session,
    *,
    waba_id: str,
    name: str,
    access_token: str,
    phone_number_id: str,
    phone_number: Optional[str] = None,
    is_test: Optional[bool] = None,
):
    """
    Insert or refresh the tenant owning a WABA.

    The display phone number and the test flag are only overwritten when
    a new value is supplied.

    Returns:
        Tuple of (tenant, created: bool)
    """
    from chatseal.models import Tenant

    for attempt in range(2):
        tenant = get_tenant_by_waba_id(db, waba_id)
        created = tenant is None
        if created:
            tenant = Tenant(
                waba_id=waba_id,
                name=name,
                access_token=access_token,
                phone_number_id=phone_number_id,
                phone_number=phone_number or None,
                is_test=bool(is_test),
            )
            db.add(tenant)
        else:
            tenant.name = name
            tenant.access_token = access_token
            tenant.phone_number_id = phone_number_id
            if phone_number:
                tenant.phone_number = phone_number
            if is_test is not None:
                tenant.is_test = bool(is_test)
        try:
            db.commit()
        except IntegrityError:
            # Another request inserted the same WABA first; update that row instead
            db.rollback()
            if attempt == 0:
                logger.info(f"Concurrent tenant insert for waba_id={waba_id}, retrying as update")
                continue
            raise
        db.refresh(tenant)
        logger.info(f"Tenant {'created' if created else 'updated'}: id={tenant.id}, waba_id={waba_id}")
        return tenant, created


# =============================================================================
# Message Repository Functions
# =============================================================================

def message_exists(db: Session, wa_message_id: Optional[str]) -> bool:
    from chatseal.models import Message

    if not wa_message_id:
        return False
    return db.query(Message.seq).filter(Message.wa_message_id == wa_message_id).first() is not None


def create_message(
    db: Session,
    *,
    tenant_id: str,
    direction: str,
    from_address: Optional[str],
    to_address: Optional[str],
    message: Optional[str],
    status: str,
    timestamp: datetime,
    wa_message_id: Optional[str] = None,
    wa_type: Optional[str] = None,
    profile_name: Optional[str] = None,
):
    """
    Create a new message in the database (idempotent on wa_message_id).

    Returns:
        Tuple of (message, is_duplicate: bool)
        - (Message, False): Message created successfully
        - (None, True): A message with this wa_message_id already exists

    Any other database error is rolled back and re-raised.
    """
    from chatseal.models import Message

    logger.info(f"Creating {direction} message: tenant={tenant_id}, wa_message_id={wa_message_id}")

    row = Message(
        tenant_id=tenant_id,
        direction=direction,
        from_address=from_address,
        to_address=to_address,
        message=message,
        status=status,
        timestamp=timestamp,
        wa_message_id=wa_message_id or None,
        wa_type=wa_type,
        profile_name=profile_name,
    )
    try:
        db.add(row)
        db.commit()
    except IntegrityError:
        db.rollback()
        if wa_message_id and message_exists(db, wa_message_id):
            # wa_message_id already exists - this is expected for idempotency
            logger.info(f"Duplicate message detected: {wa_message_id}")
            return None, True
        raise
    except Exception:
        db.rollback()
        logger.exception(f"Failed to create message {wa_message_id}")
        raise

    db.refresh(row)
    return row, False


def apply_status_update(
    db: Session,
    *,
    wa_message_id: str,
    status: str,
    timestamp: datetime,
    conversation: Optional[Dict[str, Any]] = None,
    pricing: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Apply a delivery status callback to the message it refers to.

    Returns:
        Number of rows updated. Zero means the message is unknown here
        (not sent by us, or the callback overtook the local write).
    """
    from chatseal.models import Message

    values: Dict[str, Any] = {"status": status, "timestamp": timestamp}
    if conversation is not None:
        values["conversation"] = conversation
    if pricing is not None:
        values["pricing"] = pricing
    if error is not None:
        values["error"] = error

    updated = (
        db.query(Message)
        .filter(Message.wa_message_id == wa_message_id)
        .update(values, synchronize_session=False)
    )
    db.commit()
    logger.info(f"Status update: wa_message_id={wa_message_id}, status={status}, matched={updated}")
    return updated


def get_messages_for_tenant(db: Session, tenant_id: str) -> List:
    """Return a tenant's messages ordered by timestamp ASC (insertion order on ties)."""
    from chatseal.models import Message

    return (
        db.query(Message)
        .filter(Message.tenant_id == tenant_id)
        .order_by(Message.timestamp.asc(), Message.seq.asc())
        .all()
    )
