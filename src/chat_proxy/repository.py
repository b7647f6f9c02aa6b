"""SQLite-backed conversation store."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, Sequence

import aiosqlite
from pydantic import ValidationError

from .errors import StoreError
from .schemas.content import (
    Chat,
    ContentPart,
    ConversationTurn,
    Role,
    dump_parts,
    parse_parts,
)

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    """Persistence operations the chat orchestrator depends on."""

    async def create_chat(self) -> int:
        ...

    async def get_chat(self, chat_id: int) -> Chat | None:
        ...

    async def append_message(
        self, chat_id: int, role: Role, parts: Sequence[ContentPart]
    ) -> int:
        ...

    async def get_history(self, chat_id: int) -> list[ConversationTurn]:
        ...


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


class ChatRepository:
    """Persist chats and their ordered message history."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()
        logger.info("Conversation store ready at %s", self._path)

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id INTEGER NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StoreError("Conversation store is not initialized")
        return self._connection

    async def create_chat(self) -> int:
        """Insert a new chat row and return its id."""

        connection = self._require_connection()
        try:
            cursor = await connection.execute("INSERT INTO chats DEFAULT VALUES")
            await connection.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to create chat: {exc}") from exc
        try:
            inserted_id = cursor.lastrowid
        finally:
            await cursor.close()
        if inserted_id is None:  # pragma: no cover - defensive
            raise StoreError("Insert failed: lastrowid is None")
        return int(inserted_id)

    async def get_chat(self, chat_id: int) -> Chat | None:
        """Return the chat header, or None when the id is unknown."""

        connection = self._require_connection()
        try:
            cursor = await connection.execute(
                "SELECT id, created_at FROM chats WHERE id = ? LIMIT 1",
                (chat_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to load chat {chat_id}: {exc}") from exc
        if row is None:
            return None
        return Chat(id=row["id"], created_at=_normalize_db_timestamp(row["created_at"]))

    async def append_message(
        self, chat_id: int, role: Role, parts: Sequence[ContentPart]
    ) -> int:
        """Persist one turn and return the message id."""

        connection = self._require_connection()
        serialized = json.dumps(dump_parts(parts))
        try:
            cursor = await connection.execute(
                "INSERT INTO messages(chat_id, role, content) VALUES (?, ?, ?)",
                (chat_id, role, serialized),
            )
            await connection.commit()
        except aiosqlite.Error as exc:
            raise StoreError(
                f"Failed to store {role} message for chat {chat_id}: {exc}"
            ) from exc
        try:
            inserted_id = cursor.lastrowid
        finally:
            await cursor.close()
        if inserted_id is None:  # pragma: no cover - defensive
            raise StoreError("Insert failed: lastrowid is None")
        logger.debug(
            "Stored %s message %s (%d part(s)) for chat %s",
            role,
            inserted_id,
            len(parts),
            chat_id,
        )
        return int(inserted_id)

    async def get_history(self, chat_id: int) -> list[ConversationTurn]:
        """Return the chat's turns ordered oldest first."""

        connection = self._require_connection()
        try:
            cursor = await connection.execute(
                """
                SELECT id, role, content
                FROM messages
                WHERE chat_id = ?
                ORDER BY id ASC
                """,
                (chat_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to load history for chat {chat_id}: {exc}") from exc

        turns: list[ConversationTurn] = []
        for row in rows:
            role = row["role"] if row["role"] in ("user", "model") else "user"
            try:
                parts = parse_parts(json.loads(row["content"]))
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning(
                    "Skipping unreadable message %s in chat %s: %s",
                    row["id"],
                    chat_id,
                    exc,
                )
                continue
            if not parts:
                continue
            turns.append(ConversationTurn(role=role, parts=parts))
        return turns


__all__ = ["ChatRepository", "ConversationStore"]
