"""
Statement building and rendering.

A Statement is frozen at submission: id, verb, object, result, timestamp.
Actor and context are attached by render() right before delivery, because
producers may submit before the launch context (and the LMS context
template) is known. The id never changes, so redelivery stays idempotent.

Two context shapes exist:
  lifecycle  — initialized/completed/passed/failed/terminated. Full context
               template plus the cmi5 category (and moveon for pass/fail).
  allowed    — everything producers send. Registration, session id and the
               template's parent/grouping only; never the cmi5 category, or
               the LMS applies defined-statement validation and rejects it.
"""

import copy
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from .constants import (
    ADL_VERBS, VIDEO_VERBS, VIDEO_VERB_NAMES, LIFECYCLE_VERBS, MOVEON_VERBS,
    SESSION_ID_EXTENSION, CMI5_CATEGORY, MOVEON_CATEGORY,
)
from .errors import NotConfiguredError


@dataclass(frozen=True)
class Statement:
    id: str
    verb: dict
    object: dict = None
    result: dict = None
    timestamp: str = ""
    lifecycle: bool = False

    @property
    def verb_name(self) -> str:
        return verb_display_name(self.verb)


def verb_display_name(verb):
    display = verb.get("display") or {}
    return display.get("en-US") or str(verb.get("id", "")).rsplit("/", 1)[-1]


def verb_for(verb):
    """Verb name or ready-made verb dict → xAPI verb dict."""
    if isinstance(verb, dict):
        if not verb.get("id"):
            raise ValueError("verb dict needs an 'id'")
        return dict(verb)
    name = str(verb).strip()
    if not name:
        raise ValueError("verb name is empty")
    base = VIDEO_VERBS if name in VIDEO_VERB_NAMES else ADL_VERBS
    return {"id": base + name, "display": {"en-US": name}}


def format_duration(seconds):
    """ISO-8601 duration, whole seconds: PT1H2M3S, PT5M0S, PT0S."""
    total = max(0, int(seconds or 0))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    out = "PT"
    if hours:
        out += f"{hours}H"
    if minutes:
        out += f"{minutes}M"
    return out + f"{secs}S"


def score_result(score):
    """Clamp to [0, 1] and derive raw/min/max on a 0–100 scale."""
    scaled = min(1.0, max(0.0, float(score)))
    return {"scaled": scaled, "raw": round(scaled * 100), "min": 0, "max": 100}


def _iso(ts):
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class StatementBuilder:
    """Creates Statements and renders them with the bound launch identity."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self.actor = None
        self.activity_id = None
        self.registration = None
        self.session_id = None
        self.context_template = None

    def bind(self, actor, activity_id, registration, session_id, context_template=None):
        self.actor = actor
        self.activity_id = activity_id
        self.registration = registration
        self.session_id = session_id
        self.context_template = context_template

    @property
    def bound(self) -> bool:
        return bool(self.actor and self.activity_id and self.registration)

    def build(self, verb, result=None, obj=None, lifecycle=False):
        verb = verb_for(verb)
        return Statement(
            id=str(uuid.uuid4()),
            verb=verb,
            object=copy.deepcopy(obj) if obj else None,
            result=copy.deepcopy(result) if result else None,
            timestamp=_iso(self._clock()),
            lifecycle=lifecycle,
        )

    def build_lifecycle(self, name, result=None):
        if name not in LIFECYCLE_VERBS:
            raise ValueError(f"{name!r} is not a cmi5 lifecycle verb")
        return self.build(name, result=result, lifecycle=True)

    # ─── Rendering ───────────────────────────────────────────────

    def render(self, statement):
        """Wire JSON for the LRS."""
        if not self.bound:
            raise NotConfiguredError("No launch identity bound to the statement builder")
        data = {
            "id": statement.id,
            "actor": copy.deepcopy(self.actor),
            "verb": copy.deepcopy(statement.verb),
            "object": copy.deepcopy(statement.object) or {
                "id": self.activity_id,
                "objectType": "Activity",
            },
            "timestamp": statement.timestamp,
        }
        if statement.lifecycle:
            data["context"] = self._lifecycle_context(statement.verb_name)
        else:
            data["context"] = self._allowed_context()
        if statement.result:
            data["result"] = copy.deepcopy(statement.result)
        return data

    def _lifecycle_context(self, verb_name):
        context = copy.deepcopy(self.context_template) if self.context_template else {}
        context["registration"] = self.registration
        context.setdefault("extensions", {})[SESSION_ID_EXTENSION] = self.session_id

        categories = context.setdefault("contextActivities", {}).setdefault("category", [])
        _add_category(categories, CMI5_CATEGORY)
        if verb_name in MOVEON_VERBS:
            _add_category(categories, MOVEON_CATEGORY)
        return context

    def _allowed_context(self):
        context = {
            "registration": self.registration,
            "extensions": {SESSION_ID_EXTENSION: self.session_id},
        }
        template_activities = (self.context_template or {}).get("contextActivities") or {}
        kept = {
            key: copy.deepcopy(template_activities[key])
            for key in ("parent", "grouping")
            if template_activities.get(key)
        }
        if kept:
            context["contextActivities"] = kept
        return context


def _add_category(categories, category_id):
    if not any(c.get("id") == category_id for c in categories):
        categories.append({"id": category_id, "objectType": "Activity"})
