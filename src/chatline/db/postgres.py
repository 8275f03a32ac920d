"""PostgreSQL storage backend.

Users, conversations and messages are stored as three tables whose nested
sub-documents (preferences, settings, metadata, attachments) are JSONB columns.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from chatline.config import Settings, settings as default_settings
from chatline.db.base import MessageStatsRow
from chatline.errors import ChatlineError, DatabaseError
from chatline.models import (
    AIMetadata,
    Attachment,
    Conversation,
    ConversationSettings,
    ConversationStatus,
    EditRecord,
    Message,
    MessageRole,
    User,
    UserPreferences,
)

logger = logging.getLogger(__name__)


# No foreign keys: references are validated by the application
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    external_id TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL,
    preferences JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    owner_external_id TEXT NOT NULL,
    owner_user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    last_message_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    settings JSONB NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'active',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    archived_at TIMESTAMPTZ,
    deleted_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_conversations_owner_activity
    ON conversations(owner_external_id, status, last_message_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    user_id TEXT,
    owner_external_id TEXT,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    token_count INTEGER,
    ai_metadata JSONB,
    attachments JSONB NOT NULL DEFAULT '[]',
    is_edited BOOLEAN NOT NULL DEFAULT FALSE,
    edited_at TIMESTAMPTZ,
    edit_history JSONB NOT NULL DEFAULT '[]',
    deleted_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
    ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_deleted
    ON messages(deleted_at) WHERE deleted_at IS NOT NULL;
"""

_MESSAGE_COLUMNS = (
    "id, conversation_id, user_id, owner_external_id, role, content, token_count, "
    "ai_metadata, attachments, is_edited, edited_at, edit_history, deleted_at, created_at"
)


def _json(value: Any) -> Any:
    """Decode a JSONB value that may arrive as text or already decoded."""
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _dump(value: Any) -> str:
    return json.dumps(value)


class Database:
    """PostgreSQL connection pool."""

    def __init__(self, config: Settings | None = None):
        self._settings = config or default_settings
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        if self._pool:
            return
        self._pool = await asyncpg.create_pool(
            self._settings.database_url,
            min_size=self._settings.db_pool_min_size,
            max_size=self._settings.db_pool_max_size,
        )
        logger.info(f"Connected to PostgreSQL at {self._settings.db_host}:{self._settings.db_port}")

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Get a connection from the pool."""
        if not self._pool:
            raise DatabaseError("Database not connected", code="DATABASE_UNAVAILABLE")
        async with self._pool.acquire() as conn:
            yield conn

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)


class PostgresStorage:
    """Storage backed by PostgreSQL through asyncpg."""

    def __init__(self, database: Database | None = None):
        self.database = database or Database()

    async def connect(self) -> None:
        await self.database.connect()
        await self.database.ensure_tables_exist()

    async def disconnect(self) -> None:
        await self.database.disconnect()

    @asynccontextmanager
    async def session(self) -> AsyncIterator["PostgresSession"]:
        try:
            async with self.database.connection() as conn:
                yield PostgresSession(conn)
        except ChatlineError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database operation failed: {e}")
            raise DatabaseError("Database operation failed.") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgresSession"]:
        try:
            async with self.database.connection() as conn:
                async with conn.transaction():
                    yield PostgresSession(conn)
        except ChatlineError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database transaction rolled back: {e}")
            raise DatabaseError("Database transaction failed.") from e


class PostgresSession:
    """Collection operations on a single asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # ============= User Operations =============

    async def get_user_by_external_id(self, external_id: str) -> User | None:
        row = await self.conn.fetchrow(
            "SELECT * FROM users WHERE external_id = $1", external_id
        )
        return self._row_to_user(row) if row else None

    async def insert_user_if_absent(self, user: User) -> tuple[User, bool]:
        """Insert unless the external ID already exists; return the stored user."""
        row = await self.conn.fetchrow(
            """
            INSERT INTO users (id, external_id, email, preferences, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6)
            ON CONFLICT (external_id) DO NOTHING
            RETURNING *
            """,
            user.id,
            user.external_id,
            user.email,
            _dump(user.preferences.model_dump(mode="json")),
            user.created_at,
            user.updated_at,
        )
        if row:
            return self._row_to_user(row), True
        existing = await self.get_user_by_external_id(user.external_id)
        if existing is None:
            raise DatabaseError("User vanished during insert.")
        return existing, False

    async def update_user_preferences(
        self, external_id: str, preferences: UserPreferences, updated_at: datetime
    ) -> User | None:
        row = await self.conn.fetchrow(
            """
            UPDATE users SET preferences = $1::jsonb, updated_at = $2
            WHERE external_id = $3
            RETURNING *
            """,
            _dump(preferences.model_dump(mode="json")),
            updated_at,
            external_id,
        )
        return self._row_to_user(row) if row else None

    def _row_to_user(self, row: asyncpg.Record) -> User:
        return User(
            id=row["id"],
            external_id=row["external_id"],
            email=row["email"],
            preferences=UserPreferences(**(_json(row["preferences"]) or {})),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============= Conversation Operations =============

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        await self.conn.execute(
            """
            INSERT INTO conversations
            (id, owner_external_id, owner_user_id, title, message_count, total_tokens,
             last_message_at, settings, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11)
            """,
            conversation.id,
            conversation.owner_external_id,
            conversation.owner_user_id,
            conversation.title,
            conversation.message_count,
            conversation.total_tokens,
            conversation.last_message_at,
            _dump(conversation.settings.model_dump(mode="json")),
            conversation.status.value,
            conversation.created_at,
            conversation.updated_at,
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = await self.conn.fetchrow(
            "SELECT * FROM conversations WHERE id = $1", conversation_id
        )
        return self._row_to_conversation(row) if row else None

    async def increment_conversation_counters(
        self,
        conversation_id: str,
        message_delta: int,
        token_delta: int,
        touched_at: datetime | None,
    ) -> Conversation | None:
        row = await self.conn.fetchrow(
            """
            UPDATE conversations
            SET message_count = message_count + $1,
                total_tokens = total_tokens + $2,
                last_message_at = COALESCE($3, last_message_at),
                updated_at = NOW()
            WHERE id = $4
            RETURNING *
            """,
            message_delta,
            token_delta,
            touched_at,
            conversation_id,
        )
        return self._row_to_conversation(row) if row else None

    async def set_conversation_counters(
        self,
        conversation_id: str,
        message_count: int,
        total_tokens: int,
        touched_at: datetime,
    ) -> Conversation | None:
        row = await self.conn.fetchrow(
            """
            UPDATE conversations
            SET message_count = $1, total_tokens = $2,
                last_message_at = $3, updated_at = $3
            WHERE id = $4
            RETURNING *
            """,
            message_count,
            total_tokens,
            touched_at,
            conversation_id,
        )
        return self._row_to_conversation(row) if row else None

    async def set_conversation_status(
        self, conversation_id: str, status: ConversationStatus, changed_at: datetime
    ) -> Conversation | None:
        row = await self.conn.fetchrow(
            """
            UPDATE conversations
            SET status = $1,
                archived_at = CASE WHEN $1 = 'archived' THEN $2 ELSE archived_at END,
                deleted_at = CASE WHEN $1 = 'deleted' THEN $2 ELSE deleted_at END,
                updated_at = $2
            WHERE id = $3
            RETURNING *
            """,
            status.value,
            changed_at,
            conversation_id,
        )
        return self._row_to_conversation(row) if row else None

    async def list_conversations(
        self,
        owner_external_id: str,
        status: ConversationStatus,
        limit: int,
        before: datetime | None,
    ) -> list[Conversation]:
        query = "SELECT * FROM conversations WHERE owner_external_id = $1 AND status = $2"
        params: list[Any] = [owner_external_id, status.value]

        if before is not None:
            query += " AND last_message_at < $3"
            params.append(before)

        query += f" ORDER BY last_message_at DESC, id DESC LIMIT ${len(params) + 1}"
        params.append(limit)

        rows = await self.conn.fetch(query, *params)
        return [self._row_to_conversation(row) for row in rows]

    async def count_conversations(
        self, owner_external_id: str, status: ConversationStatus
    ) -> int:
        return await self.conn.fetchval(
            "SELECT COUNT(*) FROM conversations WHERE owner_external_id = $1 AND status = $2",
            owner_external_id,
            status.value,
        )

    def _row_to_conversation(self, row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            owner_external_id=row["owner_external_id"],
            owner_user_id=row["owner_user_id"],
            title=row["title"],
            message_count=row["message_count"],
            total_tokens=row["total_tokens"],
            last_message_at=row["last_message_at"],
            settings=ConversationSettings(**_json(row["settings"])),
            status=ConversationStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            archived_at=row["archived_at"],
            deleted_at=row["deleted_at"],
        )

    # ============= Message Operations =============

    async def insert_messages(self, messages: list[Message]) -> None:
        if not messages:
            return
        await self.conn.executemany(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11, $12::jsonb, $13, $14)
            """,
            [self._message_to_params(message) for message in messages],
        )

    async def get_message(self, message_id: str) -> Message | None:
        row = await self.conn.fetchrow(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = $1", message_id
        )
        return self._row_to_message(row) if row else None

    async def save_message(self, message: Message) -> None:
        await self.conn.execute(
            """
            UPDATE messages
            SET content = $1, token_count = $2, ai_metadata = $3::jsonb,
                attachments = $4::jsonb, is_edited = $5, edited_at = $6,
                edit_history = $7::jsonb, deleted_at = $8
            WHERE id = $9
            """,
            message.content,
            message.token_count,
            _dump(message.ai_metadata.model_dump(mode="json")) if message.ai_metadata else None,
            _dump([a.model_dump(mode="json") for a in message.attachments]),
            message.is_edited,
            message.edited_at,
            _dump([e.model_dump(mode="json") for e in message.edit_history]),
            message.deleted_at,
            message.id,
        )

    async def list_messages(
        self, conversation_id: str, limit: int, before: datetime | None
    ) -> list[Message]:
        query = (
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE conversation_id = $1 AND deleted_at IS NULL"
        )
        params: list[Any] = [conversation_id]

        if before is not None:
            query += " AND created_at < $2"
            params.append(before)

        query += f" ORDER BY created_at DESC, id DESC LIMIT ${len(params) + 1}"
        params.append(limit)

        rows = await self.conn.fetch(query, *params)
        return [self._row_to_message(row) for row in rows]

    async def count_messages(self, conversation_id: str) -> int:
        return await self.conn.fetchval(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = $1 AND deleted_at IS NULL",
            conversation_id,
        )

    async def delete_conversation_messages(self, conversation_id: str) -> int:
        result = await self.conn.execute(
            "DELETE FROM messages WHERE conversation_id = $1", conversation_id
        )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])

    async def message_stats(self, conversation_id: str) -> MessageStatsRow:
        row = await self.conn.fetchrow(
            """
            SELECT COUNT(*) AS total_messages,
                   COALESCE(SUM(token_count), 0) AS counted_tokens,
                   MIN(created_at) AS first_message_at,
                   MAX(created_at) AS last_message_at
            FROM messages
            WHERE conversation_id = $1 AND deleted_at IS NULL
            """,
            conversation_id,
        )
        uncounted = await self.conn.fetch(
            """
            SELECT content FROM messages
            WHERE conversation_id = $1 AND deleted_at IS NULL AND token_count IS NULL
            """,
            conversation_id,
        )
        return MessageStatsRow(
            total_messages=row["total_messages"],
            counted_tokens=row["counted_tokens"],
            uncounted_contents=[r["content"] for r in uncounted],
            first_message_at=row["first_message_at"],
            last_message_at=row["last_message_at"],
        )

    def _message_to_params(self, message: Message) -> tuple:
        return (
            message.id,
            message.conversation_id,
            message.user_id,
            message.owner_external_id,
            message.role.value,
            message.content,
            message.token_count,
            _dump(message.ai_metadata.model_dump(mode="json")) if message.ai_metadata else None,
            _dump([a.model_dump(mode="json") for a in message.attachments]),
            message.is_edited,
            message.edited_at,
            _dump([e.model_dump(mode="json") for e in message.edit_history]),
            message.deleted_at,
            message.created_at,
        )

    def _row_to_message(self, row: asyncpg.Record) -> Message:
        ai_metadata = _json(row["ai_metadata"])
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            owner_external_id=row["owner_external_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            token_count=row["token_count"],
            ai_metadata=AIMetadata(**ai_metadata) if ai_metadata else None,
            attachments=[Attachment(**a) for a in (_json(row["attachments"]) or [])],
            is_edited=row["is_edited"],
            edited_at=row["edited_at"],
            edit_history=[EditRecord(**e) for e in (_json(row["edit_history"]) or [])],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
        )
