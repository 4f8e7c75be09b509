import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text, inspect
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from smspay.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite since sync routes run in
# FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from smspay.models import PaymentMessage  # noqa: F401

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
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("payment_messages"):
            logger.error("Database schema not applied: 'payment_messages' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# PaymentMessage Repository Functions
# =============================================================================

def create_payment_message(
    db: Session,
    session_id: str,
    body: str,
    recipient_phone: str,
    sender_phone: str,
    address: str,
    currency: str,
    amount: str,
) -> Tuple[object, bool]:
    """
    Create the record for a payment address (idempotent).

    The unique constraint on address is what closes the check-then-create
    race: a concurrent insert for the same address fails with IntegrityError
    and the existing row is returned instead.

    Returns:
        Tuple of (record, created)
        - (record, True): new record written
        - (record, False): a record for this address or id already existed
    """
    from smspay.models import PaymentMessage, MessageStatus, PaymentStatus

    logger.info(f"Creating payment message: id={session_id}, address={address}")

    now = utcnow_iso()
    record = PaymentMessage(
        id=session_id,
        body=body,
        recipient_phone=recipient_phone,
        sender_phone=sender_phone,
        address=address,
        currency=currency,
        amount=amount,
        message_status=MessageStatus.UNSENT,
        payment_status=PaymentStatus.UNPAID,
        created_at=now,
        updated_at=now,
    )

    try:
        db.add(record)
        db.commit()
        logger.info(f"Payment message created: {session_id}")
        return record, True

    except IntegrityError:
        # address or id already present - expected under concurrent polls
        db.rollback()
        existing = get_payment_message_by_address(db, address) or get_payment_message(db, session_id)
        logger.info(f"Duplicate payment message detected: id={session_id}, address={address}")
        return existing, False


def get_payment_message(db: Session, session_id: str, for_update: bool = False):
    """
    Retrieve a record by its session id.

    for_update takes a row lock on databases that support SELECT ... FOR UPDATE.
    """
    from smspay.models import PaymentMessage

    query = db.query(PaymentMessage).filter(PaymentMessage.id == session_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    result = query.first()
    logger.debug(f"Payment message lookup {session_id}: {'found' if result else 'not found'}")
    return result


def get_payment_message_by_address(db: Session, address: str, for_update: bool = False):
    from smspay.models import PaymentMessage

    query = db.query(PaymentMessage).filter(PaymentMessage.address == address)
    if for_update:
        query = query.with_for_update().populate_existing()
    return query.first()


def save_payment_message(db: Session, record) -> None:
    """Persist changes to an existing record."""
    record.updated_at = utcnow_iso()
    db.add(record)
    db.commit()
    logger.debug(
        f"Payment message saved: {record.id} pay={record.payment_status.value} "
        f"msg={record.message_status.value}"
    )


def claim_subscription(db: Session, session_id: str) -> bool:
    """
    Atomically claim the webhook subscription for a record.

    A single conditional UPDATE, so exactly one worker across all processes
    gets rowcount 1; everyone else must not call the provider.
    """
    from smspay.models import PaymentMessage

    claimed = (
        db.query(PaymentMessage)
        .filter(
            PaymentMessage.id == session_id,
            PaymentMessage.subscription_id.is_(None),
            PaymentMessage.subscription_claimed_at.is_(None),
        )
        .update({PaymentMessage.subscription_claimed_at: utcnow_iso()}, synchronize_session=False)
    )
    db.commit()
    logger.debug(f"Subscription claim for {session_id}: {'won' if claimed == 1 else 'lost'}")
    return claimed == 1


def release_subscription_claim(db: Session, session_id: str) -> None:
    """Drop a subscription claim after a failed call so a later poll can retry."""
    from smspay.models import PaymentMessage

    db.query(PaymentMessage).filter(
        PaymentMessage.id == session_id,
        PaymentMessage.subscription_id.is_(None),
    ).update({PaymentMessage.subscription_claimed_at: None}, synchronize_session=False)
    db.commit()


def claim_dispatch(db: Session, session_id: str) -> bool:
    """
    Atomically claim the SMS dispatch for a paid record.

    Succeeds only while no carrier id is stored and no other worker holds
    the claim.
    """
    from smspay.models import PaymentMessage

    claimed = (
        db.query(PaymentMessage)
        .filter(
            PaymentMessage.id == session_id,
            PaymentMessage.carrier_message_id.is_(None),
            PaymentMessage.dispatch_claimed_at.is_(None),
        )
        .update({PaymentMessage.dispatch_claimed_at: utcnow_iso()}, synchronize_session=False)
    )
    db.commit()
    logger.debug(f"Dispatch claim for {session_id}: {'won' if claimed == 1 else 'lost'}")
    return claimed == 1


def release_dispatch_claim(db: Session, session_id: str) -> None:
    """Drop a dispatch claim after the carrier refused the message."""
    from smspay.models import PaymentMessage

    db.query(PaymentMessage).filter(
        PaymentMessage.id == session_id,
        PaymentMessage.carrier_message_id.is_(None),
    ).update({PaymentMessage.dispatch_claimed_at: None}, synchronize_session=False)
    db.commit()


def count_payment_messages(db: Session, address: Optional[str] = None) -> int:
    from smspay.models import PaymentMessage

    query = db.query(PaymentMessage)
    if address is not None:
        query = query.filter(PaymentMessage.address == address)
    return query.count()
