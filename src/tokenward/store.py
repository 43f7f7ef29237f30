"""Record store — conversations, turn messages and anchors.

Writes are optimistic: every mutating call states the version it read and
fails with :class:`ConcurrencyConflict` if another writer got there first.
Two implementations are provided: an in-process store and a SQLite store.
"""

from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

from tokenward.errors import ConcurrencyConflict, NotFoundFailure
from tokenward.models import (
    Anchor,
    AnchorSnapshot,
    Conversation,
    ConversationKind,
    MessageRole,
    TurnMessage,
)

# ---------------------------------------------------------------------------
# RecordStore ABC
# ---------------------------------------------------------------------------


class RecordStore(ABC):
    """Persistence boundary used by the engine.

    Returned records are copies; mutating them has no effect until they are
    written back with :meth:`save` or :meth:`append_messages`.
    """

    @abstractmethod
    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    @abstractmethod
    def load_conversation(self, conversation_id: str) -> Conversation | None: ...

    def load_conversation_for_update(self, conversation_id: str) -> Conversation | None:
        """Load a record that is about to be written back.

        Optimistic stores simply return a fresh copy; the version check on
        write detects interleaving.
        """
        return self.load_conversation(conversation_id)

    @abstractmethod
    def save(self, conversation: Conversation) -> Conversation:
        """Write *conversation* if its version is current; return the new record."""

    @abstractmethod
    def append_messages(
        self, conversation: Conversation, messages: Sequence[TurnMessage]
    ) -> Conversation:
        """Atomically save *conversation* and append *messages* to it."""

    @abstractmethod
    def list_messages(self, conversation_id: str) -> list[TurnMessage]:
        """All messages of a conversation in chronological order."""

    def recent_messages(self, conversation_id: str, limit: int) -> list[TurnMessage]:
        if limit <= 0:
            return []
        return self.list_messages(conversation_id)[-limit:]

    def messages_before(
        self, conversation_id: str, before: datetime, limit: int
    ) -> list[TurnMessage]:
        """Up to *limit* messages strictly older than *before*, oldest first."""
        if limit <= 0:
            return []
        older = [m for m in self.list_messages(conversation_id) if m.created_at < before]
        return older[-limit:]

    @abstractmethod
    def find_conversation(
        self, owner_id: str, kind: ConversationKind, anchor_id: str | None = None
    ) -> Conversation | None:
        """Most recently created conversation matching owner, kind and anchor."""

    @abstractmethod
    def list_conversations(self, owner_id: str) -> list[Conversation]: ...

    def daily_usage(
        self,
        owner_id: str,
        since: datetime,
        exclude_conversation_id: str | None = None,
    ) -> int:
        """Sum of counters of the owner's conversations whose window started after *since*."""
        return sum(
            c.tokens_used
            for c in self.list_conversations(owner_id)
            if c.window_started_at > since and c.id != exclude_conversation_id
        )

    @abstractmethod
    def save_anchor(self, anchor: Anchor) -> Anchor: ...

    @abstractmethod
    def load_anchor(self, anchor_id: str) -> Anchor | None: ...


def _conflict(conversation: Conversation) -> ConcurrencyConflict:
    return ConcurrencyConflict(
        f"Conversation {conversation.id} changed (expected version {conversation.version})"
    )


def _not_found(conversation_id: str) -> NotFoundFailure:
    return NotFoundFailure(f"Conversation {conversation_id} not found")


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryRecordStore(RecordStore):
    """Dict-backed store. A single lock makes each write atomic."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[TurnMessage]] = {}
        self._anchors: dict[str, Anchor] = {}
        self._lock = threading.Lock()

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            if conversation.id in self._conversations:
                msg = f"Conversation {conversation.id} already exists"
                raise ConcurrencyConflict(msg)
            stored = conversation.model_copy(deep=True, update={"version": 1})
            self._conversations[stored.id] = stored
            self._messages[stored.id] = []
            return stored.model_copy(deep=True)

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            stored = self._conversations.get(conversation_id)
            return stored.model_copy(deep=True) if stored else None

    def _write(self, conversation: Conversation) -> Conversation:
        current = self._conversations.get(conversation.id)
        if current is None:
            raise _not_found(conversation.id)
        if current.version != conversation.version:
            raise _conflict(conversation)
        stored = conversation.model_copy(deep=True, update={"version": conversation.version + 1})
        self._conversations[stored.id] = stored
        return stored

    def save(self, conversation: Conversation) -> Conversation:
        with self._lock:
            return self._write(conversation).model_copy(deep=True)

    def append_messages(
        self, conversation: Conversation, messages: Sequence[TurnMessage]
    ) -> Conversation:
        with self._lock:
            stored = self._write(conversation)
            log = self._messages.setdefault(stored.id, [])
            next_seq = log[-1].sequence + 1 if log else 1
            for offset, message in enumerate(messages):
                log.append(message.model_copy(update={"sequence": next_seq + offset}))
            return stored.model_copy(deep=True)

    def list_messages(self, conversation_id: str) -> list[TurnMessage]:
        with self._lock:
            return list(self._messages.get(conversation_id, []))

    def find_conversation(
        self, owner_id: str, kind: ConversationKind, anchor_id: str | None = None
    ) -> Conversation | None:
        with self._lock:
            matches = [
                c
                for c in self._conversations.values()
                if c.owner_id == owner_id and c.kind == kind and c.anchor_id == anchor_id
            ]
            if not matches:
                return None
            return max(matches, key=lambda c: c.created_at).model_copy(deep=True)

    def list_conversations(self, owner_id: str) -> list[Conversation]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._conversations.values()
                if c.owner_id == owner_id
            ]

    def save_anchor(self, anchor: Anchor) -> Anchor:
        with self._lock:
            self._anchors[anchor.id] = anchor.model_copy()
            return anchor.model_copy()

    def load_anchor(self, anchor_id: str) -> Anchor | None:
        with self._lock:
            anchor = self._anchors.get(anchor_id)
            return anchor.model_copy() if anchor else None


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        anchor_id TEXT,
        anchor_content TEXT,
        anchor_context TEXT,
        tokens_used INTEGER NOT NULL,
        window_started_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        version INTEGER NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sequence INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        tokens INTEGER NOT NULL,
        tokens_remaining INTEGER,
        created_at TEXT NOT NULL,
        UNIQUE (conversation_id, sequence)
    )""",
    """CREATE TABLE IF NOT EXISTS anchors (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        content TEXT NOT NULL,
        context TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations (owner_id)",
)

_CONVERSATION_COLUMNS = (
    "id, owner_id, kind, anchor_id, anchor_content, anchor_context, "
    "tokens_used, window_started_at, created_at, version"
)
_MESSAGE_COLUMNS = (
    "id, conversation_id, sequence, role, content, tokens, tokens_remaining, created_at"
)


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    snapshot = None
    if row["anchor_content"] is not None:
        snapshot = AnchorSnapshot(
            content=row["anchor_content"], context=row["anchor_context"] or ""
        )
    return Conversation(
        id=row["id"],
        owner_id=row["owner_id"],
        kind=ConversationKind(row["kind"]),
        anchor_id=row["anchor_id"],
        anchor_snapshot=snapshot,
        tokens_used=row["tokens_used"],
        window_started_at=datetime.fromisoformat(row["window_started_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        version=row["version"],
    )


def _message_from_row(row: sqlite3.Row) -> TurnMessage:
    return TurnMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sequence=row["sequence"],
        role=MessageRole(row["role"]),
        content=row["content"],
        tokens=row["tokens"],
        tokens_remaining=row["tokens_remaining"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SqliteRecordStore(RecordStore):
    """SQLite-backed store. Versioned updates run inside one transaction."""

    def __init__(self, db_path: str) -> None:
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        with self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def create_conversation(self, conversation: Conversation) -> Conversation:
        stored = conversation.model_copy(deep=True, update={"version": 1})
        snapshot = stored.anchor_snapshot
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            stored.id,
                            stored.owner_id,
                            stored.kind.value,
                            stored.anchor_id,
                            snapshot.content if snapshot else None,
                            snapshot.context if snapshot else None,
                            stored.tokens_used,
                            stored.window_started_at.isoformat(),
                            stored.created_at.isoformat(),
                            stored.version,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                msg = f"Conversation {stored.id} already exists"
                raise ConcurrencyConflict(msg) from exc
        return stored

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return _conversation_from_row(row) if row else None

    def _update(self, conversation: Conversation) -> Conversation:
        snapshot = conversation.anchor_snapshot
        cursor = self._conn.execute(
            "UPDATE conversations SET anchor_content = ?, anchor_context = ?, "
            "tokens_used = ?, window_started_at = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (
                snapshot.content if snapshot else None,
                snapshot.context if snapshot else None,
                conversation.tokens_used,
                conversation.window_started_at.isoformat(),
                conversation.id,
                conversation.version,
            ),
        )
        if cursor.rowcount == 0:
            exists = self._conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", (conversation.id,)
            ).fetchone()
            if exists is None:
                raise _not_found(conversation.id)
            raise _conflict(conversation)
        return conversation.model_copy(deep=True, update={"version": conversation.version + 1})

    def save(self, conversation: Conversation) -> Conversation:
        with self._lock, self._conn:
            return self._update(conversation)

    def append_messages(
        self, conversation: Conversation, messages: Sequence[TurnMessage]
    ) -> Conversation:
        with self._lock, self._conn:
            stored = self._update(conversation)
            row = self._conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM messages WHERE conversation_id = ?",
                (stored.id,),
            ).fetchone()
            next_seq = row[0] + 1
            self._conn.executemany(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        m.id,
                        stored.id,
                        next_seq + offset,
                        m.role.value,
                        m.content,
                        m.tokens,
                        m.tokens_remaining,
                        m.created_at.isoformat(),
                    )
                    for offset, m in enumerate(messages)
                ],
            )
            return stored

    def list_messages(self, conversation_id: str) -> list[TurnMessage]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE conversation_id = ? ORDER BY sequence",
                (conversation_id,),
            ).fetchall()
        return [_message_from_row(r) for r in rows]

    def find_conversation(
        self, owner_id: str, kind: ConversationKind, anchor_id: str | None = None
    ) -> Conversation | None:
        matches = [
            c
            for c in self.list_conversations(owner_id)
            if c.kind == kind and c.anchor_id == anchor_id
        ]
        return max(matches, key=lambda c: c.created_at) if matches else None

    def list_conversations(self, owner_id: str) -> list[Conversation]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE owner_id = ?",
                (owner_id,),
            ).fetchall()
        return [_conversation_from_row(r) for r in rows]

    def save_anchor(self, anchor: Anchor) -> Anchor:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO anchors (id, owner_id, content, context) "
                "VALUES (?, ?, ?, ?)",
                (anchor.id, anchor.owner_id, anchor.content, anchor.context),
            )
        return anchor.model_copy()

    def load_anchor(self, anchor_id: str) -> Anchor | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, owner_id, content, context FROM anchors WHERE id = ?",
                (anchor_id,),
            ).fetchone()
        if row is None:
            return None
        return Anchor(
            id=row["id"], owner_id=row["owner_id"], content=row["content"], context=row["context"]
        )

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()
