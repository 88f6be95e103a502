import logging
import uuid
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from inbox_sync.config import settings
from inbox_sync.merge import STATUS_RANK
from inbox_sync.schemas import (
    ConversationStatus,
    Direction,
    MessageContent,
    MessageRecord,
    MessageStatus,
)

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from inbox_sync import models  # noqa: F401

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
    logger.debug("Checking database health...")
    try:
        from inbox_sync import models

        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            for model in (models.Conversation, models.Message):
                db.query(model).limit(1).all()
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Record Conversion
# =============================================================================

def to_record(row) -> MessageRecord:
    """Convert a stored message row into the wire record consumed by the engine."""
    return MessageRecord(
        id=row.id,
        channel_message_id=row.channel_message_id,
        conversation_id=row.conversation_id,
        direction=Direction(row.direction),
        content=MessageContent(text=row.text, media_ref=row.media_ref, template_name=row.template_name),
        status=MessageStatus(row.status),
        created_at=row.created_at,
        sender=row.sender,
    )


def advance_status(current: MessageStatus, incoming: MessageStatus) -> MessageStatus:
    """
    Stored status after a provider report.

    Unlike the client transcript, the store accepts a provider `failed` for a
    message that was pending or already handed to the channel.
    """
    if incoming == current or current == MessageStatus.FAILED:
        return current
    if incoming == MessageStatus.FAILED:
        if current in (MessageStatus.PENDING, MessageStatus.SENT):
            return MessageStatus.FAILED
        return current
    return incoming if STATUS_RANK[incoming] > STATUS_RANK[current] else current


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def create_conversation(db: Session, phone: str, name: Optional[str] = None):
    from inbox_sync.models import Conversation

    conversation = Conversation(
        id=str(uuid.uuid4()),
        phone=phone,
        name=name,
        status=ConversationStatus.QUEUED.value,
        created_at=_now(),
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    logger.info(f"Conversation created: id={conversation.id}, phone={phone}")
    return conversation


def get_conversation(db: Session, conversation_id: str):
    from inbox_sync.models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def find_or_create_conversation(db: Session, phone: str, name: Optional[str] = None):
    """
    Latest open conversation for a phone number, created when missing.

    Returns:
        Tuple of (conversation, created)
    """
    from inbox_sync.models import Conversation

    conversation = (
        db.query(Conversation)
        .filter(Conversation.phone == phone, Conversation.status != ConversationStatus.CLOSED.value)
        .order_by(Conversation.created_at.desc())
        .first()
    )
    if conversation is not None:
        if name and name != phone and conversation.name != name:
            conversation.name = name
            db.commit()
        return conversation, False
    return create_conversation(db, phone=phone, name=name), True


def update_conversation_status(db: Session, conversation_id: str, status: ConversationStatus):
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        return None
    conversation.status = status.value
    db.commit()
    db.refresh(conversation)
    logger.info(f"Conversation {conversation_id} status -> {status.value}")
    return conversation


def _touch(db: Session, conversation_id: str, at: datetime) -> None:
    conversation = get_conversation(db, conversation_id)
    if conversation is not None:
        conversation.last_message_at = at


# =============================================================================
# Message Repository Functions
# =============================================================================

def store_inbound_message(
    db: Session,
    conversation_id: str,
    channel_message_id: str,
    content: MessageContent,
    created_at: Optional[datetime] = None,
    sender: Optional[str] = None,
) -> Tuple[Optional[object], bool]:
    """
    Store a message received from the provider (idempotent).

    Returns:
        Tuple of (row, is_duplicate)
        - (row, False): Message created
        - (row, True): channel_message_id already stored, existing row returned
        - (None, False): Error occurred
    """
    from inbox_sync.models import Message

    logger.info(f"Storing inbound message: channel_id={channel_message_id}, conversation={conversation_id}")
    at = created_at or _now()

    try:
        row = Message(
            id=str(uuid.uuid4()),
            channel_message_id=channel_message_id,
            conversation_id=conversation_id,
            direction=Direction.INBOUND.value,
            text=content.text,
            media_ref=content.media_ref,
            template_name=content.template_name,
            status=MessageStatus.DELIVERED.value,
            sender=sender,
            created_at=at,
        )
        db.add(row)
        _touch(db, conversation_id, at)
        db.commit()
        return row, False

    except IntegrityError:
        # channel_message_id already exists - expected for provider retries
        db.rollback()
        logger.info(f"Duplicate inbound message detected: {channel_message_id}")
        existing = db.query(Message).filter(Message.channel_message_id == channel_message_id).first()
        return existing, True

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store inbound message {channel_message_id}: {e}")
        return None, False


def create_outbound_message(
    db: Session,
    conversation_id: str,
    content: MessageContent,
    sender: Optional[str] = None,
):
    """Store an outbound message as pending, before handing it to the channel."""
    from inbox_sync.models import Message

    at = _now()
    row = Message(
        id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        direction=Direction.OUTBOUND.value,
        text=content.text,
        media_ref=content.media_ref,
        template_name=content.template_name,
        status=MessageStatus.PENDING.value,
        sender=sender,
        created_at=at,
    )
    db.add(row)
    _touch(db, conversation_id, at)
    db.commit()
    db.refresh(row)
    logger.info(f"Outbound message created: id={row.id}, conversation={conversation_id}")
    return row


def confirm_outbound_message(db: Session, message_id: str, channel_message_id: str, status: MessageStatus):
    """Attach the channel id to a stored outbound message once the channel accepted it."""
    from inbox_sync.models import Message

    row = db.query(Message).filter(Message.id == message_id).first()
    if row is None:
        return None
    row.channel_message_id = channel_message_id
    row.status = advance_status(MessageStatus(row.status), status).value
    db.commit()
    db.refresh(row)
    logger.info(f"Outbound message confirmed: id={message_id}, channel_id={channel_message_id}")
    return row


def fail_outbound_message(db: Session, message_id: str):
    from inbox_sync.models import Message

    row = db.query(Message).filter(Message.id == message_id).first()
    if row is None:
        return None
    row.status = advance_status(MessageStatus(row.status), MessageStatus.FAILED).value
    db.commit()
    db.refresh(row)
    logger.warning(f"Outbound message failed: id={message_id}")
    return row


def apply_status_update(db: Session, channel_message_id: str, status: MessageStatus):
    """
    Apply a provider delivery status to a stored message.

    Returns:
        The updated row, or None when the message is unknown or the status
        would not move it forward.
    """
    from inbox_sync.models import Message

    row = db.query(Message).filter(Message.channel_message_id == channel_message_id).first()
    if row is None:
        # Status can race ahead of the send acknowledgement
        logger.warning(f"Status update for unknown message: {channel_message_id}")
        return None

    current = MessageStatus(row.status)
    new_status = advance_status(current, status)
    if new_status == current:
        logger.debug(f"Status update ignored for {channel_message_id}: {current.value} -> {status.value}")
        return None

    row.status = new_status.value
    db.commit()
    db.refresh(row)
    logger.info(f"Status updated for {channel_message_id}: {current.value} -> {new_status.value}")
    return row


def get_messages(
    db: Session,
    conversation_id: str,
    limit: int = 100,
    offset: int = 0,
    latest: bool = False,
) -> Tuple[list, int]:
    """
    Retrieve a conversation's messages with pagination.

    Args:
        db: Database session
        conversation_id: Conversation to read
        limit: Maximum number of messages to return
        offset: Number of messages to skip
        latest: Page from the newest message backwards

    Returns:
        Tuple of (messages ordered by created_at ASC, id ASC, total count)
    """
    from inbox_sync.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()

    if latest:
        rows = (
            query.order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        rows.reverse()
    else:
        rows = (
            query.order_by(Message.created_at.asc(), Message.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    logger.debug(f"Retrieved {len(rows)} of {total} messages for conversation {conversation_id}")
    return rows, total
