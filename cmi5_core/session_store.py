"""
Session store — the record that lets a reloaded host continue its session.

The exchange URL works exactly once, so the credential it yields is written
here before anything else happens. On the next start the record is reused
only if it belongs to the same registration AND the same LMS session.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path

from .config import log, SESSION_FILE
from .constants import DEFAULT_MASTERY_SCORE, DEFAULT_LAUNCH_MODE, DEFAULT_MOVE_ON

# attribute name → persisted key
_KEYS = {
    "endpoint": "endpoint",
    "auth_token": "authToken",
    "actor": "actor",
    "registration": "registration",
    "activity_id": "activityId",
    "session_id": "sessionId",
    "session_id_generated": "sessionIdGenerated",
    "context_template": "contextTemplate",
    "learner_preferences": "learnerPreferences",
    "launch_mode": "launchMode",
    "mastery_score": "masteryScore",
    "move_on": "moveOn",
    "return_url": "returnURL",
    "start_time": "startTime",
    "initialized": "initialized",
    "completion_sent": "completionSent",
    "success_sent": "successSent",
    "terminated": "terminated",
    "halted": "halted",
}


@dataclass
class SessionRecord:
    endpoint: str = None
    auth_token: str = None
    actor: dict = None
    registration: str = None
    activity_id: str = None
    session_id: str = None
    session_id_generated: bool = False
    context_template: dict = None
    learner_preferences: dict = field(default_factory=dict)
    launch_mode: str = DEFAULT_LAUNCH_MODE
    mastery_score: float = DEFAULT_MASTERY_SCORE
    move_on: str = DEFAULT_MOVE_ON
    return_url: str = None
    start_time: float = None
    initialized: bool = False
    completion_sent: bool = False
    success_sent: bool = False
    terminated: bool = False
    halted: bool = False

    def to_dict(self):
        return {_KEYS[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data):
        record = cls()
        for attr, key in _KEYS.items():
            if data.get(key) is not None:
                setattr(record, attr, data[key])
        return record

    def matches(self, registration, session_id=None):
        """
        Same attempt = same registration, and same session when the current
        launch names one. A registration is reused across sessions after an
        LMS-side reset; old credentials are dead in that case.
        """
        if not self.registration or self.registration != registration:
            return False
        return not session_id or self.session_id == session_id


class MemorySessionStore:
    """Store that lives as long as the process. Used for tests and embedding."""

    def __init__(self):
        self._data = None

    def save(self, record):
        self._data = json.dumps(record.to_dict())

    def load(self):
        if self._data is None:
            return None
        return SessionRecord.from_dict(json.loads(self._data))

    def clear(self):
        self._data = None


class FileSessionStore:
    """JSON file store. Last write wins; one host owns a session at a time."""

    def __init__(self, path=SESSION_FILE):
        self.path = Path(path)

    def save(self, record):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(record.to_dict()), encoding="utf-8")
            log.debug("Session record saved to %s", self.path)
        except OSError as e:
            log.error("Failed to save session record: %s", e)

    def load(self):
        """Returns a SessionRecord, or None when absent or unreadable."""
        try:
            if not self.path.exists():
                return None
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.error("Failed to load session record: %s", e)
            return None
        if not isinstance(data, dict):
            return None
        return SessionRecord.from_dict(data)

    def clear(self):
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("Failed to clear session record: %s", e)
