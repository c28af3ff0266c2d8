"""Conversation and message persistence for sealed runs."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from corpus_agent.errors import StoreError
from corpus_agent.retrieval.store import SqliteDatabase
from corpus_agent.types import utc_now


@dataclass(slots=True)
class Conversation:
    conversation_id: str
    collection_id: str
    title: str | None = None
    session_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.conversation_id,
            "collectionId": self.collection_id,
            "title": self.title,
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class Message:
    message_id: str
    conversation_id: str
    role: str
    content: str
    activity: list[dict[str, Any]] | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "agentActivity": self.activity,
            "createdAt": self.created_at.isoformat(),
        }


class ConversationStore(Protocol):
    """Persistence collaborator used by the session coordinator."""

    async def create_conversation(
        self, collection_id: str, title: str | None, session_id: str | None = None
    ) -> Conversation: ...

    async def touch(self, conversation_id: str) -> None: ...

    async def set_session_id(self, conversation_id: str, session_id: str) -> None: ...

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        activity: list[dict[str, Any]] | None = None,
    ) -> Message: ...

    async def list_conversations(self, collection_id: str) -> list[Conversation]: ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}

    async def create_conversation(
        self, collection_id: str, title: str | None, session_id: str | None = None
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            collection_id=collection_id,
            title=title,
            session_id=session_id,
        )
        self._conversations[conversation.conversation_id] = conversation
        self._messages[conversation.conversation_id] = []
        return conversation

    async def touch(self, conversation_id: str) -> None:
        self._require(conversation_id).updated_at = utc_now()

    async def set_session_id(self, conversation_id: str, session_id: str) -> None:
        self._require(conversation_id).session_id = session_id

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        activity: list[dict[str, Any]] | None = None,
    ) -> Message:
        self._require(conversation_id)
        message = Message(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            activity=activity,
        )
        self._messages[conversation_id].append(message)
        return message

    async def list_conversations(self, collection_id: str) -> list[Conversation]:
        items = [c for c in self._conversations.values() if c.collection_id == collection_id]
        return sorted(items, key=lambda c: c.updated_at, reverse=True)

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise StoreError(f"Conversation not found: {conversation_id}")
        return conversation


_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    collection_id TEXT NOT NULL,
    title TEXT,
    session_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL REFERENCES conversations(conversation_id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    agent_activity TEXT,
    created_at TEXT NOT NULL
);
"""


class SqliteConversationStore:
    """Stores conversations next to the chunk tables in the same database file."""

    def __init__(self, path: str | Path) -> None:
        self._db = SqliteDatabase(path, _SCHEMA)

    async def create_conversation(
        self, collection_id: str, title: str | None, session_id: str | None = None
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            collection_id=collection_id,
            title=title,
            session_id=session_id,
        )
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO conversations VALUES (?, ?, ?, ?, ?, ?)",
            (
                conversation.conversation_id,
                collection_id,
                title,
                session_id,
                conversation.created_at.isoformat(),
                conversation.updated_at.isoformat(),
            ),
        )
        return conversation

    async def touch(self, conversation_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
            (utc_now().isoformat(), conversation_id),
        )

    async def set_session_id(self, conversation_id: str, session_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE conversations SET session_id = ? WHERE conversation_id = ?",
            (session_id, conversation_id),
        )

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        activity: list[dict[str, Any]] | None = None,
    ) -> Message:
        message = Message(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            activity=activity,
        )
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO messages(message_id, conversation_id, role, content, agent_activity, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                message.message_id,
                conversation_id,
                role,
                content,
                json.dumps(activity) if activity is not None else None,
                message.created_at.isoformat(),
            ),
        )
        return message

    async def list_conversations(self, collection_id: str) -> list[Conversation]:
        return await asyncio.to_thread(self._list_conversations, collection_id)

    def _list_conversations(self, collection_id: str) -> list[Conversation]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations WHERE collection_id = ? ORDER BY updated_at DESC",
                (collection_id,),
            ).fetchall()
        return [
            Conversation(
                conversation_id=row["conversation_id"],
                collection_id=row["collection_id"],
                title=row["title"],
                session_id=row["session_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            for row in rows
        ]

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return await asyncio.to_thread(self._get_messages, conversation_id)

    def _get_messages(self, conversation_id: str) -> list[Message]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
        return [
            Message(
                message_id=row["message_id"],
                conversation_id=row["conversation_id"],
                role=row["role"],
                content=row["content"],
                activity=json.loads(row["agent_activity"]) if row["agent_activity"] else None,
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def delete_conversation(self, conversation_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )

    def _execute(self, sql: str, params: tuple[Any, ...]) -> None:
        with self._db.transaction() as conn:
            conn.execute(sql, params)
