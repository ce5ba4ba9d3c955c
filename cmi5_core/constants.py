"""
Constants, protocol IRIs, default thresholds and verb tables.
"""

ENGINE_VERSION = "1.0.0"
XAPI_VERSION = "1.0.3"

# ─── Thresholds ──────────────────────────────────────────────────
BATCH_INTERVAL_SEC = 3          # Timer-driven flush every 3s
MAX_QUEUE_DISCONNECTED = 100    # Oldest statements dropped past this while offline
DEFAULT_MASTERY_SCORE = 0.75    # Used when LMS.LaunchData has no masteryScore

# ─── Network ─────────────────────────────────────────────────────
TRANSPORT_RETRIES = 3           # Bounded attempts for 5xx / connection errors
BACKOFF_FACTOR = 1.0            # 1s, 2s, 4s between retries
RETRY_STATUSES = (500, 502, 503, 504)
API_TIMEOUT = 30                # Seconds per LRS call
API_TIMEOUT_SYNC = 10           # Teardown path: nothing waits for us after this

# Exchange responses that mean the one-time URL was already used
EXCHANGE_CONSUMED_STATUSES = frozenset({401, 403, 410})

# Response keys that may carry the exchanged token
TOKEN_FIELDS = ("auth-token", "authToken", "token")
AUTH_SCHEMES = ("Basic ", "Bearer ")
DEFAULT_AUTH_SCHEME = "Basic "

SESSION_INVALIDATED_PATTERNS = ("session not found",)

# ─── cmi5 IRIs ───────────────────────────────────────────────────
SESSION_ID_EXTENSION = "https://w3id.org/xapi/cmi5/context/extensions/sessionid"
CMI5_CATEGORY = "https://w3id.org/xapi/cmi5/context/categories/cmi5"
MOVEON_CATEGORY = "https://w3id.org/xapi/cmi5/context/categories/moveon"

LEARNER_PREFERENCES_PROFILE = "cmi5LearnerPreferences"
LAUNCH_DATA_STATE = "LMS.LaunchData"

DEFAULT_LAUNCH_MODE = "Normal"
DEFAULT_MOVE_ON = "CompletedOrPassed"

# ─── Verbs ───────────────────────────────────────────────────────
ADL_VERBS = "http://adlnet.gov/expapi/verbs/"
VIDEO_VERBS = "https://w3id.org/xapi/video/verbs/"

# Defined by cmi5; only the engine itself may send these.
LIFECYCLE_VERBS = frozenset({
    "initialized",
    "completed",
    "passed",
    "failed",
    "terminated",
})

MOVEON_VERBS = frozenset({"passed", "failed"})

VIDEO_VERB_NAMES = frozenset({"played", "paused", "seeked"})

# Producer events that are flushed right away instead of waiting for the timer.
# Quiz/exam answers and game results all arrive as "answered".
IMMEDIATE_FLUSH_VERBS = ("answered",)

INTERACTION_TYPE = "http://adlnet.gov/expapi/activities/cmi.interaction"
PAGE_TYPE = "http://activitystrea.ms/schema/1.0/page"
