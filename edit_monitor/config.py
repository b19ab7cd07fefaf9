# Edit Monitor - configuration
# Override paths and timings via config.yaml or CLI args.

import logging
import os
import re
import sys
import yaml
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import List, Optional

from .ledger import DEFAULT_IGNORE_PATTERNS

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / "config.yaml"
DB_PATH_ENV = "EDIT_MONITOR_CURSOR_DB"


def default_cursor_db_path() -> str:
    """Location of Cursor's global state.vscdb for the running platform."""
    home = Path.home()
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA") or home / "AppData" / "Roaming")
    elif sys.platform == "darwin":
        base = home / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME") or home / ".config")
    return str(base / "Cursor" / "User" / "globalStorage" / "state.vscdb")


@dataclass
class Config:
    """Runtime configuration for the edit monitor."""

    # Paths (auto-detected if empty)
    cursor_db_path: str = ""
    workspace_root: str = "."

    # Notification output
    notify_url: Optional[str] = None  # None = stdout/JSONL only
    jsonl_path: str = "~/.local/share/edit-monitor/attributions.jsonl"

    # Change ledger
    retention_ms: int = 30_000
    cleanup_interval_ms: int = 5_000
    ignore_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS)
    )

    # Response poller
    poll_interval_ms: int = 5_000
    store_debounce_ms: int = 500
    correlation_radius_ms: int = 10_000
    max_retries: int = 3
    retry_backoff_ms: int = 200

    def resolve_paths(self):
        """Expand ~ and fill in the platform default for the Cursor store."""
        if not self.cursor_db_path:
            self.cursor_db_path = default_cursor_db_path()

        self.cursor_db_path = str(Path(self.cursor_db_path).expanduser())
        self.workspace_root = str(Path(self.workspace_root).expanduser().resolve())
        if self.jsonl_path:
            self.jsonl_path = str(Path(self.jsonl_path).expanduser())

    def _check_ignore_patterns(self):
        """Fall back to the default ignore list if any pattern is unusable."""
        patterns = self.ignore_patterns
        try:
            if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
                raise TypeError("ignore_patterns must be a list of strings")
            for p in patterns:
                re.compile(p)
        except (TypeError, re.error) as e:
            logger.warning(f"Ignoring invalid ignore_patterns: {e}")
            self.ignore_patterns = list(DEFAULT_IGNORE_PATTERNS)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        cfg = cls()
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (OSError, yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
        cfg._check_ignore_patterns()
        env_db = os.environ.get(DB_PATH_ENV)
        if env_db:
            cfg.cursor_db_path = env_db
        cfg.resolve_paths()
        return cfg
