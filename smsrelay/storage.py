import logging
import uuid
from typing import Callable, List, Optional, Protocol

from pydantic import BaseModel, Field
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from smsrelay.config import settings
from smsrelay.entities import Message, MessageStatus, MessageType, utc_now
from smsrelay.exceptions import NotFound, PersistenceFailure

logger = logging.getLogger(__name__)

# check_same_thread=False lets worker threads share the SQLite connection pool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {},
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
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from smsrelay.models import MessageRow  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable.

    Returns:
        True if DB is healthy, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository
# =============================================================================

class IndexParams(BaseModel):
    """Paging and search parameters for listing messages."""
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=20, ge=1, le=100)
    query: Optional[str] = None


class MessageRepository(Protocol):
    """Persistence contract consumed by the message service."""

    def load(self, user_id: str, message_id: uuid.UUID) -> Message:
        ...

    def store(self, message: Message) -> None:
        ...

    def update(self, message: Message) -> None:
        ...

    def index(self, user_id: str, owner: str, contact: str, params: IndexParams) -> List[Message]:
        ...

    def get_outstanding(self, user_id: str, owner: str, limit: int) -> List[Message]:
        ...

    def release(self, user_id: str, message_id: uuid.UUID) -> bool:
        ...


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally with ``escape="\\"``."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _to_row_values(message: Message) -> dict:
    values = message.model_dump()
    values["id"] = str(message.id)
    values["type"] = message.type.value
    values["status"] = message.status.value
    return values


class SQLMessageRepository:
    """
    SQLAlchemy implementation of ``MessageRepository``.

    Every call opens its own session so one repository can be shared by
    concurrent worker threads.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def load(self, user_id: str, message_id: uuid.UUID) -> Message:
        from smsrelay.models import MessageRow

        logger.debug(f"Loading message [{message_id}] for user [{user_id}]")
        try:
            with self.session_factory() as db:
                row = (
                    db.query(MessageRow)
                    .filter(MessageRow.id == str(message_id), MessageRow.user_id == user_id)
                    .first()
                )
                if row is None:
                    raise NotFound(f"message with id [{message_id}] not found for user [{user_id}]")
                return Message.model_validate(row)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot load message with id [{message_id}]: {e}") from e

    def store(self, message: Message) -> None:
        from smsrelay.models import MessageRow

        try:
            with self.session_factory() as db:
                db.add(MessageRow(**_to_row_values(message)))
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot store message with id [{message.id}]: {e}") from e

        logger.info(f"Message stored: {message.id}")

    def update(self, message: Message) -> None:
        from smsrelay.models import MessageRow

        try:
            with self.session_factory() as db:
                row = db.get(MessageRow, str(message.id))
                if row is None:
                    raise NotFound(f"message with id [{message.id}] not found")
                for key, value in _to_row_values(message).items():
                    setattr(row, key, value)
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot update message with id [{message.id}]: {e}") from e

        logger.info(f"Message updated: {message.id}, status: {message.status.value}")

    def index(self, user_id: str, owner: str, contact: str, params: IndexParams) -> List[Message]:
        """
        List the messages exchanged between ``owner`` and ``contact``.

        Messages are ordered by order_timestamp DESC, newest first.
        """
        from smsrelay.models import MessageRow

        logger.debug(f"Indexing messages: user={user_id}, owner={owner}, contact={contact}, params={params}")
        try:
            with self.session_factory() as db:
                query = db.query(MessageRow).filter(
                    MessageRow.user_id == user_id,
                    MessageRow.owner == owner,
                    MessageRow.contact == contact,
                )
                if params.query:
                    query = query.filter(MessageRow.content.ilike(f"%{escape_like(params.query)}%", escape="\\"))

                rows = (
                    query.order_by(MessageRow.order_timestamp.desc())
                    .offset(params.skip)
                    .limit(params.limit)
                    .all()
                )
                return [Message.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot index messages between [{owner}] and [{contact}]: {e}") from e

    def get_outstanding(self, user_id: str, owner: str, limit: int) -> List[Message]:
        """
        Claim up to ``limit`` pending messages of ``owner`` for sending.

        Each candidate moves from pending to sending with an update guarded
        on ``status = 'pending'``. A candidate whose update matches no row was
        claimed by a concurrent fetch and is skipped, so a message is never
        handed out twice. Databases with row locks also skip candidates
        locked by another fetch.
        """
        from smsrelay.models import MessageRow

        try:
            with self.session_factory() as db:
                candidates = (
                    db.query(MessageRow.id)
                    .filter(
                        MessageRow.user_id == user_id,
                        MessageRow.owner == owner,
                        MessageRow.type == MessageType.MOBILE_TERMINATED.value,
                        MessageRow.status == MessageStatus.PENDING.value,
                    )
                    .order_by(MessageRow.order_timestamp.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                    .all()
                )
                now = utc_now()
                claimed = []
                for (row_id,) in candidates:
                    updated = (
                        db.query(MessageRow)
                        .filter(MessageRow.id == row_id, MessageRow.status == MessageStatus.PENDING.value)
                        .update(
                            {MessageRow.status: MessageStatus.SENDING.value, MessageRow.updated_at: now},
                            synchronize_session=False,
                        )
                    )
                    if updated:
                        claimed.append(row_id)
                    else:
                        logger.debug(f"Message [{row_id}] was claimed by another fetch")
                db.commit()

                if not claimed:
                    messages = []
                else:
                    rows = (
                        db.query(MessageRow)
                        .filter(MessageRow.id.in_(claimed))
                        .order_by(MessageRow.order_timestamp.asc())
                        .all()
                    )
                    messages = [Message.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot fetch [{limit}] outstanding messages for [{owner}]: {e}") from e

        logger.info(f"Claimed {len(messages)} outstanding messages for owner {owner}")
        return messages

    def release(self, user_id: str, message_id: uuid.UUID) -> bool:
        """
        Hand a claimed message back to the pending queue.

        Only a message which is still sending and has no send attempt is
        released. Returns whether the message went back to pending.
        """
        from smsrelay.models import MessageRow

        try:
            with self.session_factory() as db:
                updated = (
                    db.query(MessageRow)
                    .filter(
                        MessageRow.id == str(message_id),
                        MessageRow.user_id == user_id,
                        MessageRow.status == MessageStatus.SENDING.value,
                        MessageRow.send_attempt_count == 0,
                    )
                    .update(
                        {MessageRow.status: MessageStatus.PENDING.value, MessageRow.updated_at: utc_now()},
                        synchronize_session=False,
                    )
                )
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"cannot release message with id [{message_id}]: {e}") from e

        logger.info(f"Message [{message_id}] released: {bool(updated)}")
        return bool(updated)
