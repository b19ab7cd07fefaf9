# Edit Monitor - notification emitter
#
# Delivers AttributionNotices. Always prints a one-line summary to stdout;
# POSTs the JSON payload to an HTTP endpoint when one is configured (failed
# posts wait in a bounded retry queue and are resent after the next
# success); appends to a local JSONL file when no endpoint accepts it.

import logging
from collections import deque
from pathlib import Path
from typing import Optional

import requests

from .normalizer import AttributionNotice

logger = logging.getLogger(__name__)

RETRY_QUEUE_SIZE = 1000


class Emitter:
    """Sends notices to stdout, an optional HTTP endpoint and JSONL. Never raises."""

    def __init__(self, notify_url: Optional[str] = None,
                 jsonl_path: Optional[str] = None, timeout: float = 2.0):
        self.notify_url = notify_url
        self.jsonl_path = jsonl_path
        self.timeout = timeout
        self._retry_queue: deque = deque(maxlen=RETRY_QUEUE_SIZE)

    @property
    def pending_retries(self) -> int:
        return len(self._retry_queue)

    def emit(self, notice: AttributionNotice):
        payload = notice.to_json()

        if self.notify_url:
            if self._post(payload):
                _print_notice(notice, "→ http")
                self._flush_retry_queue()
                return
            self._retry_queue.append(payload)

        self._write_jsonl(payload)
        _print_notice(notice, "→ jsonl" if self.jsonl_path else "")

    def _post(self, payload: str) -> bool:
        try:
            r = requests.post(
                self.notify_url,
                data=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            return r.ok
        except requests.RequestException as e:
            logger.debug(f"Notify POST failed: {e}")
            return False

    def _flush_retry_queue(self):
        """Resend queued payloads until one fails."""
        while self._retry_queue:
            if not self._post(self._retry_queue[0]):
                break
            self._retry_queue.popleft()

    def _write_jsonl(self, payload: str):
        if not self.jsonl_path:
            return
        try:
            path = Path(self.jsonl_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(payload + "\n")
        except OSError as e:
            logger.error(f"JSONL write error: {e}")


def _print_notice(notice: AttributionNotice, dest: str):
    """Print a compact notice summary to stdout."""
    parts = [f"  [{notice.message_id[:8]}]", notice.summary]
    if notice.files:
        shown = ", ".join(f.rsplit("/", 1)[-1] for f in notice.files[:5])
        if len(notice.files) > 5:
            shown += ", ..."
        parts.append(f"({shown})")
    if notice.prompt_preview:
        parts.append(f'"{notice.prompt_preview}"')
    if dest:
        parts.append(dest)
    print(" ".join(parts))
