"""SQLite persistence of conversations and their messages."""

from __future__ import annotations

import datetime
import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Literal

from .config import config
from .models import Conversation, Message, Role

logger = config.get_logger(__name__)

VALID_ROLES: set[str] = {"user", "assistant", "system"}
MESSAGE_COLUMNS = "id, conversation_id, role, content, sources, regenerated_from, created_at"
CONVERSATION_COLUMNS = "id, session_id, title, created_at, updated_at"

ExportFormat = Literal["json", "markdown"]


def _now() -> str:
    return datetime.datetime.now(tz=datetime.UTC).isoformat()


class SQLiteConversationStore:
    """Conversations and append-only messages stored in SQLite.

    Message order is the order of insertion, tracked by an autoincrement
    ``seq`` column rather than timestamps.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """Open (and create if needed) the conversation database.

        Args:
            db_path: SQLite file. If None, uses config.CONVERSATION_DB_PATH.
        """
        self.db_path = Path(db_path if db_path is not None else config.CONVERSATION_DB_PATH)
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
                    session_id TEXT NOT NULL,
                    title TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL
                        REFERENCES conversations(id) ON DELETE CASCADE,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                    content TEXT NOT NULL,
                    sources TEXT NOT NULL DEFAULT '[]',
                    regenerated_from TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_session_id "
                "ON conversations(session_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation_id "
                "ON messages(conversation_id, seq)"
            )
            conn.commit()

    @staticmethod
    def _build_conversation(row: tuple) -> Conversation:
        conversation_id, session_id, title, created_at, updated_at = row
        return Conversation(
            id=conversation_id,
            session_id=session_id,
            title=title,
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def _build_message(row: tuple) -> Message:
        message_id, conversation_id, role, content, sources, regenerated_from, created_at = row
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            sources=json.loads(sources) if sources else [],
            regenerated_from=regenerated_from,
            created_at=created_at,
        )

    # Conversations

    def create_conversation(self, session_id: str, title: str | None = None) -> Conversation:
        """Start a new conversation for a session.

        Returns:
            The created conversation.
        """
        now = _now()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            session_id=session_id,
            title=title or f"Conversation {now[:10]}",
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO conversations ({CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?)",  # noqa: S608
                (
                    conversation.id,
                    conversation.session_id,
                    conversation.title,
                    conversation.created_at,
                    conversation.updated_at,
                ),
            )
            conn.commit()
        logger.info("Created conversation %s for session %s", conversation.id, session_id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",  # noqa: S608
                (conversation_id,),
            ).fetchone()
        return self._build_conversation(row) if row else None

    def get_or_create_conversation(self, session_id: str) -> Conversation:
        """Most recently updated conversation of the session, created if none exists."""  # noqa: DOC201
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {CONVERSATION_COLUMNS} FROM conversations "  # noqa: S608
                "WHERE session_id = ? ORDER BY updated_at DESC, rowid DESC LIMIT 1",
                (session_id,),
            ).fetchone()
        if row:
            return self._build_conversation(row)
        return self.create_conversation(session_id)

    def list_conversations(self, session_id: str | None = None) -> list[Conversation]:
        """Conversations, most recently updated first."""  # noqa: DOC201
        query = f"SELECT {CONVERSATION_COLUMNS} FROM conversations"  # noqa: S608
        params: tuple[Any, ...] = ()
        if session_id is not None:
            query += " WHERE session_id = ?"
            params = (session_id,)
        query += " ORDER BY updated_at DESC, rowid DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._build_conversation(row) for row in rows]

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation | None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, _now(), conversation_id),
            )
            conn.commit()
        return self.get_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation together with its messages.

        Returns:
            True if the conversation existed.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            conn.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted conversation %s", conversation_id)
        return deleted

    def update_conversation_timestamp(self, conversation_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (_now(), conversation_id),
            )
            conn.commit()

    # Messages

    def append_message(  # noqa: PLR0913, PLR0917
        self,
        conversation_id: str,
        role: Role,
        content: str,
        sources: list[dict[str, Any]] | None = None,
        regenerated_from: str | None = None,
        *,
        message_id: str | None = None,
    ) -> Message:
        """Append a message to the end of a conversation.

        A caller that needs the id before the write completes can pass its own
        message_id.

        Returns:
            The stored message.

        Raises:
            ValueError: If the role is not user, assistant or system.
        """
        if role not in VALID_ROLES:
            msg = f"Invalid message role: {role}"
            raise ValueError(msg)

        message = Message(
            id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            sources=list(sources or []),
            regenerated_from=regenerated_from,
            created_at=_now(),
        )
        with self._connect() as conn:
            self._insert_message(conn.cursor(), message)
            conn.commit()
        return message

    @staticmethod
    def _insert_message(cursor: sqlite3.Cursor, message: Message) -> None:
        cursor.execute(
            f"INSERT INTO messages ({MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",  # noqa: S608
            (
                message.id,
                message.conversation_id,
                message.role,
                message.content,
                json.dumps(message.sources, default=str),
                message.regenerated_from,
                message.created_at,
            ),
        )

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?",  # noqa: S608
                (message_id,),
            ).fetchone()
        return self._build_message(row) if row else None

    def list_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in insertion order."""  # noqa: DOC201
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages "  # noqa: S608
                "WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
        return [self._build_message(row) for row in rows]

    def load_history(
        self,
        conversation_id: str,
        limit: int = 10,
        *,
        include_system: bool = False,
    ) -> list[Message]:
        """Return the most recent ``limit`` messages, oldest first.

        System audit records are left out unless include_system is set.

        Returns:
            Up to ``limit`` messages in conversation order.
        """
        if limit <= 0:
            return []

        query = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ?"  # noqa: S608
        if not include_system:
            query += " AND role != 'system'"
        query += " ORDER BY seq DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, (conversation_id, limit)).fetchall()
        return [self._build_message(row) for row in reversed(rows)]

    def regenerate_message(
        self,
        message_id: str,
        content: str,
        sources: list[dict[str, Any]] | None = None,
    ) -> tuple[Message, Message]:
        """Overwrite an assistant message and record the regeneration.

        The content and sources are replaced in place and a ``system`` message
        pointing back at the original is appended, in one transaction.

        Returns:
            The updated message and the audit message.

        Raises:
            ValueError: If the message does not exist or is not an assistant message.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            row = cursor.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?",  # noqa: S608
                (message_id,),
            ).fetchone()
            if row is None:
                msg = f"Message not found: {message_id}"
                raise ValueError(msg)
            original = self._build_message(row)
            if original.role != "assistant":
                msg = f"Only assistant messages can be regenerated, got {original.role}"
                raise ValueError(msg)

            now = _now()
            cursor.execute(
                "UPDATE messages SET content = ?, sources = ? WHERE id = ?",
                (content, json.dumps(sources or [], default=str), message_id),
            )
            audit = Message(
                id=str(uuid.uuid4()),
                conversation_id=original.conversation_id,
                role="system",
                content=f"Response regenerated at {now}",
                regenerated_from=message_id,
                created_at=now,
            )
            self._insert_message(cursor, audit)
            cursor.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, original.conversation_id),
            )
            conn.commit()

        updated = Message(
            id=original.id,
            conversation_id=original.conversation_id,
            role=original.role,
            content=content,
            sources=list(sources or []),
            regenerated_from=original.regenerated_from,
            created_at=original.created_at,
        )
        logger.info("Regenerated message %s", message_id)
        return updated, audit

    # Export

    def export_conversation(
        self,
        conversation_id: str,
        fmt: ExportFormat = "json",
    ) -> str:
        """Render a conversation and its messages as JSON or Markdown.

        Returns:
            The rendered document.

        Raises:
            ValueError: If the conversation does not exist or fmt is unknown.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            msg = f"Conversation not found: {conversation_id}"
            raise ValueError(msg)
        messages = self.list_messages(conversation_id)

        if fmt == "json":
            payload = {
                "conversation": vars(conversation),
                "messages": [vars(message) for message in messages],
                "exported_at": _now(),
            }
            return json.dumps(payload, indent=2, default=str)

        if fmt == "markdown":
            return self._render_markdown(conversation, messages)

        msg = f"Unsupported export format: {fmt}"
        raise ValueError(msg)

    @staticmethod
    def _render_markdown(conversation: Conversation, messages: list[Message]) -> str:
        lines = [
            f"# {conversation.title or conversation.id}",
            "",
            f"**Date**: {conversation.created_at}",
            "",
            "---",
            "",
        ]
        for message in messages:
            lines.extend([f"## {message.role.capitalize()}", "", message.content, ""])
            if message.sources:
                lines.append("**Sources:**")
                for source in message.sources:
                    name = (source.get("metadata") or {}).get("source", "Unknown")
                    similarity = float(source.get("similarity", 0.0))
                    lines.append(f"- {name} ({similarity * 100:.0f}%)")
                lines.append("")
            lines.extend(["---", ""])
        return "\n".join(lines)
