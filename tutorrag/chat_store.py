"""SQLite persistence for conversations and messages."""

from __future__ import annotations

import datetime
import json
import sqlite3
import uuid
from pathlib import Path

from .config import config
from .errors import PersistenceError
from .models import Citation, Conversation, Message, Role

logger = config.get_logger(__name__)

CONVERSATION_COLUMNS = (
    "id",
    "user_id",
    "class_id",
    "title",
    "message_count",
    "last_message_at",
    "created_at",
)
MESSAGE_COLUMNS = (
    "id",
    "conversation_id",
    "role",
    "content",
    "citations",
    "token_count",
    "created_at",
)


def _now() -> str:
    return datetime.datetime.now(tz=datetime.UTC).isoformat()


class ChatStore:
    """Durable store for Conversation and Message rows.

    Reads are scoped by owner and class. Every write is a single transaction
    and failures are raised as :class:`PersistenceError`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or config.DATABASE_PATH)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._create_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _create_tables(self) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    class_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    last_message_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL CHECK(role IN ('user','assistant')),
                    content TEXT NOT NULL,
                    citations TEXT,
                    token_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (conversation_id) REFERENCES conversations (id)
                        ON DELETE CASCADE
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_owner "
                "ON conversations(user_id, class_id, last_message_at)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation "
                "ON messages(conversation_id, seq)"
            )
            conn.commit()

    @staticmethod
    def _build_conversation(row: tuple) -> Conversation:
        (
            conversation_id,
            user_id,
            class_id,
            title,
            message_count,
            last_message_at,
            created_at,
        ) = row
        return Conversation(
            id=conversation_id,
            owner_user_id=user_id,
            class_id=class_id,
            title=title,
            message_count=int(message_count),
            last_message_at=last_message_at,
            created_at=created_at,
        )

    @staticmethod
    def _build_message(row: tuple) -> Message:
        (
            message_id,
            conversation_id,
            role,
            content,
            citations,
            token_count,
            created_at,
        ) = row
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=Role(role),
            content=content,
            citations=(
                [Citation.from_dict(item) for item in json.loads(citations)]
                if citations
                else None
            ),
            token_count=int(token_count),
            created_at=created_at,
        )

    def get_conversation(
        self,
        conversation_id: str,
        user_id: str,
        class_id: str | None = None,
    ) -> Conversation | None:
        """Fetch a conversation owned by a user, optionally within a class.

        Returns:
            The conversation, or None if missing or owned by someone else.
        """
        clause = "id = ? AND user_id = ?"
        params = [conversation_id, user_id]
        if class_id is not None:
            clause += " AND class_id = ?"
            params.append(class_id)

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(CONVERSATION_COLUMNS)} FROM conversations "  # noqa: S608
                f"WHERE {clause}",
                params,
            )
            row = cursor.fetchone()
        return self._build_conversation(row) if row else None

    def list_conversations(self, user_id: str, class_id: str) -> list[Conversation]:
        """List a user's conversations in a class, most recent first.

        Returns:
            Conversations ordered by last activity.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(CONVERSATION_COLUMNS)} FROM conversations "  # noqa: S608
                "WHERE user_id = ? AND class_id = ? "
                "ORDER BY COALESCE(last_message_at, created_at) DESC, created_at DESC",
                (user_id, class_id),
            )
            return [self._build_conversation(row) for row in cursor.fetchall()]

    def create_conversation(
        self,
        user_id: str,
        class_id: str,
        title: str | None = None,
    ) -> Conversation:
        """Insert a new, empty conversation.

        Returns:
            The created conversation.

        Raises:
            PersistenceError: If the row cannot be written.
        """
        conversation = Conversation(
            id=str(uuid.uuid4()),
            owner_user_id=user_id,
            class_id=class_id,
            title=title or config.DEFAULT_CONVERSATION_TITLE,
            message_count=0,
            created_at=_now(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations (
                        id, user_id, class_id, title, message_count, created_at
                    )
                    VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (
                        conversation.id,
                        user_id,
                        class_id,
                        conversation.title,
                        conversation.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to create conversation for user %s", user_id)
            msg = "Failed to create conversation"
            raise PersistenceError(msg) from exc

        logger.info("Created conversation %s in class %s", conversation.id, class_id)
        return conversation

    def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """Fetch the most recent messages of a conversation.

        Returns:
            Up to ``limit`` messages, oldest first.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(MESSAGE_COLUMNS)} FROM messages "  # noqa: S608
                "WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
                (conversation_id, limit),
            )
            rows = cursor.fetchall()
        return [self._build_message(row) for row in reversed(rows)]

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {', '.join(MESSAGE_COLUMNS)} FROM messages "  # noqa: S608
                "WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            )
            return [self._build_message(row) for row in cursor.fetchall()]

    @staticmethod
    def _insert_message(cursor: sqlite3.Cursor, message: Message) -> None:
        citations = (
            json.dumps([citation.to_dict() for citation in message.citations])
            if message.citations
            else None
        )
        cursor.execute(
            """
            INSERT INTO messages (
                id, conversation_id, role, content, citations, token_count, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.conversation_id,
                message.role.value,
                message.content,
                citations,
                message.token_count,
                message.created_at,
            ),
        )

    def add_user_message(
        self,
        conversation_id: str,
        content: str,
        token_count: int,
    ) -> Message:
        """Persist the user's side of a turn.

        Returns:
            The stored message.

        Raises:
            PersistenceError: If the row cannot be written.
        """
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=Role.USER,
            content=content,
            citations=None,
            token_count=token_count,
            created_at=_now(),
        )
        try:
            with self._connect() as conn:
                self._insert_message(conn.cursor(), message)
        except sqlite3.Error as exc:
            logger.exception("Failed to store user message in %s", conversation_id)
            msg = "Failed to store user message"
            raise PersistenceError(msg) from exc
        return message

    def add_assistant_message(
        self,
        conversation_id: str,
        content: str,
        citations: list[Citation],
        token_count: int,
    ) -> tuple[Message, Conversation]:
        """Persist the assistant reply and bump the conversation aggregate.

        The message insert and the ``message_count``/``last_message_at``
        update commit together.

        Returns:
            The stored message and the updated conversation.

        Raises:
            PersistenceError: If either write fails or the conversation is gone.
        """
        now = _now()
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=content,
            citations=list(citations) or None,
            token_count=token_count,
            created_at=now,
        )
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                self._insert_message(cursor, message)
                cursor.execute(
                    """
                    UPDATE conversations
                    SET message_count = message_count + 2, last_message_at = ?
                    WHERE id = ?
                    """,
                    (now, conversation_id),
                )
                if cursor.rowcount != 1:
                    msg = f"Conversation {conversation_id} no longer exists"
                    raise PersistenceError(msg)
                cursor.execute(
                    f"SELECT {', '.join(CONVERSATION_COLUMNS)} FROM conversations "  # noqa: S608
                    "WHERE id = ?",
                    (conversation_id,),
                )
                conversation = self._build_conversation(cursor.fetchone())
        except sqlite3.Error as exc:
            logger.exception(
                "Failed to store assistant message in %s", conversation_id
            )
            msg = "Failed to store assistant message"
            raise PersistenceError(msg) from exc
        return message, conversation

    def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Delete an owned conversation and its messages.

        Returns:
            True if a conversation was deleted.

        Raises:
            PersistenceError: If the delete fails.
        """
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                    (conversation_id, user_id),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            logger.exception("Failed to delete conversation %s", conversation_id)
            msg = "Failed to delete conversation"
            raise PersistenceError(msg) from exc
