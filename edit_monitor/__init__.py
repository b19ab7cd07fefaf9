# Edit Monitor: attributes workspace file edits to Cursor AI responses
#
# Components:
#   config.py          - Runtime configuration (YAML + platform defaults)
#   normalizer.py      - Data model and decoding of Cursor JSON payloads
#   ledger.py          - Change ledger with retention purge and window queries
#   scheduler.py       - Timer abstraction (asyncio loop or simulated clock)
#   tracker.py         - Workspace file watcher feeding the ledger
#   parsers/cursor.py  - Read-only reader for Cursor's state.vscdb
#   detector.py        - Polls for new assistant responses and correlates them
#   emitter.py         - Notification output (stdout, HTTP, JSONL)
#   watcher.py         - Monitor context and CLI entry point

__version__ = "1.0.0"
