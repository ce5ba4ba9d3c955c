"""
SessionState — single source of truth for the session lifecycle.

Phases:
  UNINITIALIZED → RESTORING_OR_FETCHING → CONNECTED | STANDALONE
  CONNECTED → TERMINATING → TERMINATED
  HALTED: absorbing, entered when the LRS reports the session gone.

Transitions are guarded by one lock: producers read from their own thread
while the delivery worker moves the phase forward.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum

from .config import log


class Phase(Enum):
    UNINITIALIZED = "uninitialized"
    RESTORING_OR_FETCHING = "restoring_or_fetching"
    CONNECTED = "connected"
    STANDALONE = "standalone"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    HALTED = "halted"


_ALLOWED = {
    Phase.UNINITIALIZED: {Phase.RESTORING_OR_FETCHING},
    Phase.RESTORING_OR_FETCHING: {
        Phase.CONNECTED, Phase.STANDALONE, Phase.HALTED, Phase.TERMINATED,
    },
    # Launch parameters can arrive after the host started standalone.
    Phase.STANDALONE: {Phase.RESTORING_OR_FETCHING},
    Phase.CONNECTED: {Phase.TERMINATING, Phase.TERMINATED, Phase.HALTED},
    Phase.TERMINATING: {Phase.CONNECTED, Phase.TERMINATED, Phase.HALTED},
    Phase.TERMINATED: set(),
    Phase.HALTED: set(),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class SessionState:
    phase: Phase = Phase.UNINITIALIZED

    # ── Send-once lifecycle flags ─────────────────────────────
    initialized_sent: bool = False
    completion_sent: bool = False
    success_sent: bool = False
    terminated_sent: bool = False

    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def connected(self) -> bool:
        return self.phase in (Phase.CONNECTED, Phase.TERMINATING)

    @property
    def terminated(self) -> bool:
        return self.phase is Phase.TERMINATED

    @property
    def halted(self) -> bool:
        return self.phase is Phase.HALTED

    @property
    def standalone(self) -> bool:
        return self.phase is Phase.STANDALONE

    @property
    def accepting(self) -> bool:
        """Whether submitted statements may still be queued at all."""
        return self.phase not in (Phase.TERMINATED, Phase.HALTED)

    def transition(self, new_phase):
        with self.lock:
            if new_phase is self.phase:
                return
            if new_phase not in _ALLOWED[self.phase]:
                raise InvalidTransitionError(f"{self.phase.value} → {new_phase.value}")
            log.info("Session phase: %s → %s", self.phase.value, new_phase.value)
            self.phase = new_phase

    def halt(self):
        """One-way. Returns False if already halted or terminated."""
        with self.lock:
            if self.phase in (Phase.HALTED, Phase.TERMINATED):
                return False
            log.warning("Session phase: %s → halted", self.phase.value)
            self.phase = Phase.HALTED
            return True

    def claim(self, flag):
        """Atomically test-and-set a send-once flag. True if the caller won."""
        with self.lock:
            if getattr(self, flag):
                return False
            setattr(self, flag, True)
            return True

    def release(self, flag):
        """Undo a claim after a failed send so a later attempt can retry."""
        with self.lock:
            setattr(self, flag, False)
