# Edit Monitor - data model
#
# Every record the monitor handles lives here: filesystem events in the
# change ledger, Cursor conversations/messages decoded from state.vscdb,
# and the attribution notices handed to the emitter.
#
# SCHEMA RULES for Cursor payloads:
#   - Values in cursorDiskKV are opaque JSON owned by Cursor
#   - decode_*() never raise; they return a Decoded success or failure
#   - Required fields missing or mistyped -> failure, the row is skipped
#   - Optional fields missing -> None

import json
import math
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")

CONVERSATION_PREFIX = "composerData:"
MESSAGE_PREFIX = "bubbleId:"


# ═══════════════════════════════════════════════════════════════
# CLOSED VALUE SETS
# ═══════════════════════════════════════════════════════════════

class ChangeKind:
    """Filesystem change kinds recorded in the ledger."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"

    @classmethod
    def all_kinds(cls) -> set:
        return {cls.CREATE, cls.MODIFY, cls.DELETE}

    @classmethod
    def is_valid(cls, kind: str) -> bool:
        return kind in cls.all_kinds()


class Role:
    """Message author roles. Cursor stores them as bubble ``type`` ints."""

    USER = "user"
    ASSISTANT = "assistant"

    _BY_CODE = {1: USER, 2: ASSISTANT}

    @classmethod
    def from_code(cls, code: Any) -> Optional[str]:
        if isinstance(code, bool):
            return None
        return cls._BY_CODE.get(code)


# ═══════════════════════════════════════════════════════════════
# DATA MODEL
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FileEvent:
    """A single observed filesystem change."""
    path: str
    timestamp: int                     # epoch ms
    kind: str = ChangeKind.MODIFY      # ChangeKind value


@dataclass(frozen=True)
class ActiveWindow:
    """Interval in which file edits are attributable to an AI response."""
    start: int
    end: int

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp <= self.end


@dataclass(frozen=True)
class LedgerStats:
    tracked_path_count: int
    total_event_count: int
    oldest_event_timestamp: Optional[int]


@dataclass(frozen=True)
class Conversation:
    """A Cursor composer (chat thread)."""
    id: str                            # composer id, from the row key
    conversation_id: str
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


@dataclass(frozen=True)
class Message:
    """A Cursor bubble (one chat message)."""
    id: str
    conversation_id: str
    role: str                          # Role value
    text: str = ""
    created_at: Optional[int] = None   # epoch ms; None when Cursor omits it
    model_type: Optional[str] = None

    @property
    def is_assistant(self) -> bool:
        return self.role == Role.ASSISTANT

    def preview(self, max_chars: int = 60) -> str:
        return self.text[:max_chars].replace("\n", " ")


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """Tagged decode result: exactly one of value / error is set."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Decoded[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "Decoded[T]":
        return cls(error=error)


@dataclass
class AttributionNotice:
    """
    Emitted once per new assistant response: the files edited within the
    correlation window around the response time.
    """

    message_id: str
    conversation_id: str
    response_at: int
    window_start: int
    window_end: int
    files: List[str] = field(default_factory=list)
    response_preview: Optional[str] = None
    prompt_preview: Optional[str] = None
    model_type: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def summary(self) -> str:
        return f"AI response: {len(self.files)} file(s) changed"

    def to_json(self) -> str:
        """Serialize to JSON, omitting null fields for lean payloads."""
        d = asdict(self)
        d["summary"] = self.summary
        return json.dumps({k: v for k, v in d.items() if v is not None})


# ═══════════════════════════════════════════════════════════════
# DECODING
# ═══════════════════════════════════════════════════════════════

def to_epoch_ms(value: Any) -> Optional[int]:
    """
    Convert a Cursor timestamp (epoch ms number, numeric string or ISO 8601
    string) to epoch ms. Returns None when the value cannot be read.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            return int(float(s))
        except OverflowError:
            return None
        except ValueError:
            pass
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def _load_object(raw: Any) -> Decoded[dict]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return Decoded.failure("value is not UTF-8 text")
    if not isinstance(raw, str):
        return Decoded.failure(f"value is {type(raw).__name__}, expected JSON text")
    try:
        data = json.loads(raw)
    except ValueError as e:
        return Decoded.failure(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return Decoded.failure("JSON value is not an object")
    return Decoded.success(data)


def _optional_time(data: dict, name: str) -> Decoded[Optional[int]]:
    value = data.get(name)
    if value is None:
        return Decoded.success(None)
    ms = to_epoch_ms(value)
    if ms is None:
        return Decoded.failure(f"unreadable {name}: {value!r}")
    return Decoded.success(ms)


def decode_conversation(key: str, raw: Any) -> Decoded[Conversation]:
    """Decode a ``composerData:<id>`` row."""
    if not key.startswith(CONVERSATION_PREFIX):
        return Decoded.failure(f"not a conversation key: {key}")
    composer_id = key[len(CONVERSATION_PREFIX):]
    if not composer_id:
        return Decoded.failure("empty composer id")

    loaded = _load_object(raw)
    if not loaded.ok:
        return Decoded.failure(loaded.error)
    data = loaded.value

    conversation_id = data.get("conversationId") or composer_id
    if not isinstance(conversation_id, str):
        return Decoded.failure("conversationId is not a string")

    created = _optional_time(data, "createdAt")
    if not created.ok:
        return Decoded.failure(created.error)
    updated = _optional_time(data, "updatedAt")
    if not updated.ok:
        return Decoded.failure(updated.error)

    return Decoded.success(Conversation(
        id=composer_id,
        conversation_id=conversation_id,
        created_at=created.value,
        updated_at=updated.value,
    ))


def decode_message(key: str, raw: Any) -> Decoded[Message]:
    """Decode a ``bubbleId:<composer id>:<bubble id>`` row."""
    parts = key.split(":")
    if len(parts) != 3 or parts[0] + ":" != MESSAGE_PREFIX:
        return Decoded.failure(f"not a message key: {key}")
    _, composer_id, bubble_id = parts
    if not composer_id or not bubble_id:
        return Decoded.failure(f"incomplete message key: {key}")

    loaded = _load_object(raw)
    if not loaded.ok:
        return Decoded.failure(loaded.error)
    data = loaded.value

    role = Role.from_code(data.get("type"))
    if role is None:
        return Decoded.failure(f"unknown bubble type: {data.get('type')!r}")

    text = data.get("text") or data.get("content") or ""
    if not isinstance(text, str):
        return Decoded.failure("text is not a string")

    created = _optional_time(data, "createdAt")
    if not created.ok:
        return Decoded.failure(created.error)

    model_type = data.get("modelType")
    if not isinstance(model_type, str):
        model_type = None

    return Decoded.success(Message(
        id=bubble_id,
        conversation_id=composer_id,
        role=role,
        text=text,
        created_at=created.value,
        model_type=model_type,
    ))
