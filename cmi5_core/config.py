"""
Paths, logging setup, engine config load/save.
"""

import os
import sys
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

from .constants import (
    BATCH_INTERVAL_SEC, MAX_QUEUE_DISCONNECTED, TRANSPORT_RETRIES,
    BACKOFF_FACTOR, API_TIMEOUT, API_TIMEOUT_SYNC, DEFAULT_MASTERY_SCORE,
    SESSION_INVALIDATED_PATTERNS, IMMEDIATE_FLUSH_VERBS,
)


# ─── Paths ───────────────────────────────────────────────────────
# One session record per host profile; CMI5_HOME overrides for tests/CI.
BASE_DIR = Path(os.environ.get("CMI5_HOME", Path.home() / ".cmi5"))

CONFIG_FILE = BASE_DIR / "config.json"
LOG_FILE = BASE_DIR / "cmi5.log"
SESSION_FILE = BASE_DIR / "session.json"


# ─── Logging ─────────────────────────────────────────────────────

log = logging.getLogger("cmi5")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(log_file=LOG_FILE, level=logging.INFO):
    """File + console logging for the CLI. Library users keep their own setup."""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        if log_file.exists() and log_file.stat().st_size > 1_000_000:
            log_file.write_text("")
    except OSError:
        pass

    logging.basicConfig(
        filename=str(log_file),
        level=level,
        format=_LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        encoding="utf-8",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    log.addHandler(console_handler)
    return log


# ─── Engine Config ───────────────────────────────────────────────

@dataclass
class EngineConfig:
    batch_interval_sec: float = BATCH_INTERVAL_SEC
    max_queue_disconnected: int = MAX_QUEUE_DISCONNECTED
    transport_retries: int = TRANSPORT_RETRIES
    backoff_factor: float = BACKOFF_FACTOR
    request_timeout_sec: float = API_TIMEOUT
    sync_timeout_sec: float = API_TIMEOUT_SYNC
    default_mastery_score: float = DEFAULT_MASTERY_SCORE
    session_invalidated_patterns: tuple = SESSION_INVALIDATED_PATTERNS
    immediate_flush_verbs: tuple = IMMEDIATE_FLUSH_VERBS
    send_exit_on_teardown: bool = True
    session_store_path: Path = field(default_factory=lambda: SESSION_FILE)

    def to_dict(self):
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, Path):
                value = str(value)
            data[_camel(f.name)] = value
        return data

    @classmethod
    def from_dict(cls, data):
        """Build from camelCase JSON keys. Unknown keys are ignored."""
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in data:
                continue
            value = data[key]
            if f.name in ("session_invalidated_patterns", "immediate_flush_verbs"):
                value = tuple(value)
            elif f.name == "session_store_path":
                value = Path(value)
            kwargs[f.name] = value
        return cls(**kwargs)


def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def load_config(path=CONFIG_FILE):
    """Load config from disk. Missing or unreadable file gives the defaults."""
    path = Path(path)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return EngineConfig.from_dict(json.load(f))
        except (json.JSONDecodeError, OSError, TypeError) as e:
            log.warning("Config at %s unreadable (%s) — using defaults", path, e)
    return EngineConfig()


def save_config(config, path=CONFIG_FILE):
    """Save an EngineConfig to disk."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
    log.info("Config saved to %s", path)
