"""
cmi5_core — cmi5/xAPI statement delivery engine
================================================
Architecture: one Cmi5Engine per host start; all network work on a single
delivery worker. Producers only submit() and read status.

  constants.py     → Version, intervals, cmi5 IRIs, verb tables
  config.py        → Paths, logging, EngineConfig load/save
  errors.py        → Exception taxonomy
  http_client.py   → HTTP sessions with pooling, bounded retry, CA bundle
  launch.py        → LaunchContext from one-time launch parameters
  session_store.py → SessionRecord + file/memory stores (reload survival)
  credentials.py   → One-time credential exchange
  statements.py    → Statement building and wire rendering
  api.py           → LRS calls (store-by-id PUT, documents, sync PUT)
  delivery.py      → DeliveryQueue, Batcher (single worker), FlushTimer
  state.py         → SessionState phases (single source of truth)
  activities.py    → Producer helpers (activity ids, quiz answers)
  engine.py        → Cmi5Engine (lifecycle orchestration)
  runner.py        → CLI entry point
"""

from .activities import make_activity_id, activity_object, quiz_answer
from .config import EngineConfig
from .engine import Cmi5Engine
from .errors import (
    Cmi5Error, DeliveryError, SessionInvalidatedError,
    ExchangeError, ExchangeConsumedError, InvalidInteractionError,
)
from .launch import LaunchContext, resolve_launch
from .session_store import SessionRecord, FileSessionStore, MemorySessionStore
from .state import Phase

__all__ = [
    "Cmi5Engine",
    "EngineConfig",
    "Cmi5Error",
    "DeliveryError",
    "SessionInvalidatedError",
    "ExchangeError",
    "ExchangeConsumedError",
    "InvalidInteractionError",
    "LaunchContext",
    "resolve_launch",
    "SessionRecord",
    "FileSessionStore",
    "MemorySessionStore",
    "Phase",
    "make_activity_id",
    "activity_object",
    "quiz_answer",
]
