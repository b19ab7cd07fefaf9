# Edit Monitor - Cursor state.vscdb reader
#
# Cursor keeps chat history in the cursorDiskKV table of its global
# state.vscdb (SQLite), one JSON value per row:
#   composerData:<composer id>               - a conversation
#   bubbleId:<composer id>:<bubble id>       - a message in it
#
# The format belongs to Cursor and changes between versions, so rows that
# fail to decode are skipped with a warning rather than failing the query.
# The file is opened read-only; the monitor never writes to it.

import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

from ..normalizer import (
    CONVERSATION_PREFIX,
    MESSAGE_PREFIX,
    Conversation,
    Message,
    Role,
    decode_conversation,
    decode_message,
)

logger = logging.getLogger(__name__)

TABLE = "cursorDiskKV"

# SQLite primary result codes that indicate a transient condition: Cursor
# is mid-write (locked/busy) or we caught the file between page writes.
SQLITE_BUSY = 5
SQLITE_LOCKED = 6
SQLITE_CORRUPT = 11
SQLITE_NOTADB = 26
TRANSIENT_CODES = frozenset({SQLITE_BUSY, SQLITE_LOCKED, SQLITE_CORRUPT, SQLITE_NOTADB})


class StoreError(Exception):
    """Base class for chat store failures."""


class StoreUnavailableError(StoreError):
    """The store file does not exist or cannot be opened at all."""


class StoreCorruptError(StoreError):
    """Transient corrupt/locked state; worth retrying."""


class StoreReadError(StoreError):
    """Any other SQLite failure."""


def classify_sqlite_error(exc: sqlite3.Error) -> StoreError:
    """Map a sqlite3 exception to a StoreError by its primary result code."""
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None and (code & 0xFF) in TRANSIENT_CODES:
        err = StoreCorruptError(f"{getattr(exc, 'sqlite_errorname', code)}: {exc}")
    else:
        err = StoreReadError(str(exc))
    return err


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CursorStateReader:
    """Read-only access to conversations and messages in state.vscdb."""

    def __init__(self, db_path: str, timeout: float = 2.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> "CursorStateReader":
        self.open()
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self):
        if self._conn is not None:
            return
        path = Path(self.db_path)
        if not path.is_file():
            raise StoreUnavailableError(f"Cursor DB not found at: {self.db_path}")
        try:
            self._conn = sqlite3.connect(
                f"{path.resolve().as_uri()}?mode=ro", uri=True, timeout=self.timeout
            )
        except sqlite3.Error as e:
            raise classify_sqlite_error(e) from e
        logger.debug(f"Opened Cursor DB: {self.db_path}")

    def close(self):
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None
            logger.debug("Cursor DB closed")

    def _rows(self, prefix: str) -> list:
        if self._conn is None:
            raise StoreReadError("Database not opened")
        try:
            return self._conn.execute(
                f"SELECT key, value FROM {TABLE} WHERE key LIKE ? ESCAPE '\\'",
                (_escape_like(prefix) + "%",),
            ).fetchall()
        except sqlite3.Error as e:
            raise classify_sqlite_error(e) from e

    def list_conversations(self) -> List[Conversation]:
        conversations = []
        for key, value in self._rows(CONVERSATION_PREFIX):
            decoded = decode_conversation(key, value)
            if decoded.ok:
                conversations.append(decoded.value)
            else:
                logger.warning(f"Skipping conversation {key}: {decoded.error}")
        logger.debug(f"Found {len(conversations)} conversation(s)")
        return conversations

    def list_messages(self, conversation_id: str, quiet: bool = False) -> List[Message]:
        messages = []
        for key, value in self._rows(f"{MESSAGE_PREFIX}{conversation_id}:"):
            decoded = decode_message(key, value)
            if decoded.ok:
                messages.append(decoded.value)
            elif not quiet:
                logger.warning(f"Skipping message {key}: {decoded.error}")
        return messages

    def latest_assistant_message(self) -> Optional[Message]:
        """
        Most recent assistant message across every conversation.

        This is a full scan: Cursor has no index by time, so every
        conversation's messages are loaded and compared on created_at.
        Messages without a timestamp cannot be placed and are ignored.
        """
        conversations = self.list_conversations()
        latest: Optional[Message] = None
        scanned = 0

        for conv in conversations:
            for msg in self.list_messages(conv.id, quiet=True):
                if not msg.is_assistant or msg.created_at is None:
                    continue
                scanned += 1
                if latest is None or msg.created_at > latest.created_at:
                    latest = msg

        logger.debug(
            f"Scanned {len(conversations)} conversation(s), "
            f"{scanned} assistant message(s)"
        )
        return latest

    def latest_user_message(self, conversation_id: str) -> Optional[Message]:
        users = [m for m in self.list_messages(conversation_id, quiet=True)
                 if m.role == Role.USER]
        if not users:
            return None
        timed = [m for m in users if m.created_at is not None]
        if timed:
            return max(timed, key=lambda m: m.created_at)
        return users[-1]
