import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatstore.schemas import ChatRecord, MessageRecord

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Dialect-specific INSERT constructs supporting ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _enable_sqlite_pragmas(dbapi_connection, connection_record, use_wal: bool) -> None:
    cursor = dbapi_connection.cursor()
    try:
        # SQLite leaves foreign keys off unless asked per connection
        cursor.execute("PRAGMA foreign_keys=ON")
        if use_wal:
            cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


class Store:
    """
    Durable storage for chats and messages.

    A Store owns its engine and session factory. Create one per process,
    hand it to the ingestion pipeline and query engine, and ``close()`` it
    on shutdown. Failures from the database are raised unchanged; the store
    never retries.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        url = make_url(database_url)
        is_sqlite = url.get_backend_name() == "sqlite"
        connect_args = {}
        if is_sqlite:
            # Pipeline writes from its own thread; readers come from request threads
            connect_args["check_same_thread"] = False
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(database_url, connect_args=connect_args, echo=echo)

        if is_sqlite:
            use_wal = bool(url.database) and url.database != ":memory:"

            @event.listens_for(self.engine, "connect")
            def _on_connect(dbapi_connection, connection_record):
                _enable_sqlite_pragmas(dbapi_connection, connection_record, use_wal)

        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init_db(self) -> None:
        """
        Create tables and indexes if they do not exist yet.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.engine.url!r}")
        try:
            from chatstore import models  # noqa: F401  registers tables with Base

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def drop_all(self) -> None:
        from chatstore import models  # noqa: F401

        Base.metadata.drop_all(bind=self.engine)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database connections released")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Yield a session; commit on success, roll back on error, always close.
        """
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and both tables exist, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                tables = set(inspect(conn).get_table_names())
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

        missing = {"chats", "messages"} - tables
        if missing:
            logger.error(f"Database schema not applied: missing tables {sorted(missing)}")
            return False
        logger.debug("Database health check passed")
        return True

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _upsert(self, db: Session, model, values: dict, key_columns: list[str]) -> None:
        dialect = db.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            # No native upsert: fall back to ORM merge (SELECT then INSERT/UPDATE)
            db.merge(model(**values))
            return
        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={k: stmt.excluded[k] for k in values if k not in key_columns},
        )
        db.execute(stmt)

    def upsert_chat(self, chat: ChatRecord) -> None:
        """
        Insert or replace a chat by jid. Every column is overwritten with the
        supplied values.
        """
        from chatstore.models import Chat

        logger.debug(f"Upserting chat: jid={chat.jid}, last_message_time={chat.last_message_time}")
        with self.session() as db:
            self._upsert(
                db,
                Chat,
                {
                    "jid": chat.jid,
                    "name": chat.name,
                    "last_message_time": chat.last_message_time,
                },
                ["jid"],
            )

    def upsert_message(self, msg: MessageRecord) -> bool:
        """
        Insert or replace a message by (id, chat_jid).

        Returns:
            True if the row was written, False if it was dropped because the
            content is empty. Dropping is not an error.
        """
        from chatstore.models import Message

        if not msg.content:
            logger.debug(f"Skipping empty message: id={msg.id}, chat={msg.chat_jid}")
            return False

        with self.session() as db:
            self._upsert(
                db,
                Message,
                {
                    "id": msg.id,
                    "chat_jid": msg.chat_jid,
                    "sender": msg.sender,
                    "content": msg.content,
                    "timestamp": msg.timestamp,
                    "is_from_me": msg.is_from_me,
                },
                ["id", "chat_jid"],
            )
        return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_chats(self) -> list[ChatRecord]:
        """All chats, most recently active first; chats with no watermark last."""
        from chatstore.models import Chat

        with self.session() as db:
            rows = db.query(Chat).order_by(Chat.last_message_time.desc().nulls_last()).all()
            return [ChatRecord.model_validate(row) for row in rows]

    def get_chat(self, jid: str) -> Optional[ChatRecord]:
        """Look up a chat by jid. Returns None when absent."""
        from chatstore.models import Chat

        with self.session() as db:
            row = db.get(Chat, jid)
            return ChatRecord.model_validate(row) if row is not None else None

    def get_messages(self, chat_jid: str, limit: int = 50) -> list[MessageRecord]:
        """Newest ``limit`` messages of a chat, newest first."""
        from chatstore.models import Message

        with self.session() as db:
            rows = (
                db.query(Message)
                .filter(Message.chat_jid == chat_jid)
                .order_by(Message.timestamp.desc())
                .limit(max(limit, 0))
                .all()
            )
            return [MessageRecord.model_validate(row) for row in rows]
