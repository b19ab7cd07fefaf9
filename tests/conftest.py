"""Shared fixtures: on-disk Cursor stores and a simulated clock."""

import json
import sqlite3

import pytest

from edit_monitor.scheduler import ManualScheduler

USER = 1
ASSISTANT = 2


def write_store(path, conversations=None, messages=None, raw_rows=None):
    """
    Create a state.vscdb-style SQLite file.

    conversations: {composer_id: dict payload}
    messages: {(composer_id, bubble_id): dict payload}
    raw_rows: [(key, value)] inserted verbatim
    """
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE IF NOT EXISTS cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    rows = []
    for cid, payload in (conversations or {}).items():
        rows.append((f"composerData:{cid}", json.dumps(payload)))
    for (cid, bid), payload in (messages or {}).items():
        rows.append((f"bubbleId:{cid}:{bid}", json.dumps(payload)))
    rows.extend(raw_rows or [])
    conn.executemany("INSERT INTO cursorDiskKV (key, value) VALUES (?, ?)", rows)
    conn.commit()
    conn.close()
    return str(path)


def bubble(kind, text, created_at):
    return {"type": kind, "text": text, "createdAt": created_at}


@pytest.fixture
def store_path(tmp_path):
    """A store with two conversations; the newest AI reply is bubble b4 at t=100000."""
    return write_store(
        tmp_path / "state.vscdb",
        conversations={
            "conv-a": {"conversationId": "conv-a", "createdAt": 1000},
            "conv-b": {"createdAt": "2024-01-01T00:00:00Z"},
        },
        messages={
            ("conv-a", "b1"): bubble(USER, "write a parser", 40_000),
            ("conv-a", "b2"): bubble(ASSISTANT, "Here is a parser", 50_000),
            ("conv-b", "b3"): bubble(USER, "add tests\nplease", 90_000),
            ("conv-b", "b4"): bubble(ASSISTANT, "Added tests", 100_000),
        },
    )


@pytest.fixture
def clock():
    return ManualScheduler(start_ms=100_000)
