"""
Launch context resolution.

The LMS launches the content once with five query parameters:
endpoint, fetch, actor (URL-encoded JSON), registration, activityId.
They are only present on first entry; after a reload the engine relies on
the session store instead.
"""

import json
import uuid
from dataclasses import dataclass
from urllib.parse import urlsplit, parse_qs

from .config import log

LAUNCH_KEYS = ("endpoint", "fetch", "actor", "registration", "activityId")


@dataclass(frozen=True)
class LaunchContext:
    endpoint: str
    fetch_url: str
    actor: dict
    registration: str
    activity_id: str
    session_id: str
    session_id_generated: bool = False


def parse_launch_params(params):
    """
    Normalize launch input into a flat dict of the launch keys.

    Accepts a full launch URL, a bare query string, or a mapping.
    Values from parse_qs lists are reduced to their first item.
    """
    if params is None:
        return {}
    if isinstance(params, str):
        parts = urlsplit(params)
        query = parts.query if parts.scheme else params.lstrip("?")
        parsed = parse_qs(query)
        return {k: v[0] for k, v in parsed.items() if k in LAUNCH_KEYS and v}
    return {k: params[k] for k in LAUNCH_KEYS if params.get(k)}


def session_id_from_fetch_url(fetch_url):
    """The LMS embeds the session id in the exchange URL as ?session=..."""
    if not fetch_url:
        return None
    try:
        values = parse_qs(urlsplit(fetch_url).query).get("session")
    except ValueError:
        return None
    return values[0] if values else None


def current_registration(params):
    return parse_launch_params(params).get("registration")


def current_session_id(params):
    return session_id_from_fetch_url(parse_launch_params(params).get("fetch"))


def resolve_launch(params):
    """
    Build a LaunchContext from launch parameters.
    Returns None when any required parameter is missing (standalone mode).
    """
    values = parse_launch_params(params)

    actor = values.get("actor")
    if isinstance(actor, str):
        try:
            actor = json.loads(actor)
        except json.JSONDecodeError as e:
            log.error("Failed to parse actor parameter: %s", e)
            actor = None
    if actor is not None and not isinstance(actor, dict):
        log.error("Actor parameter is not a JSON object — ignoring it")
        actor = None

    missing = [k for k in LAUNCH_KEYS if not (actor if k == "actor" else values.get(k))]
    if missing:
        log.info("Missing launch parameters (%s) — standalone mode", ", ".join(missing))
        return None

    fetch_url = values["fetch"]
    session_id = session_id_from_fetch_url(fetch_url)
    generated = False
    if not session_id:
        # Strict LMSs correlate traffic by their own id and may reject ours.
        session_id = str(uuid.uuid4())
        generated = True
        log.warning("No session id in fetch URL — generated %s (degraded)", session_id)

    context = LaunchContext(
        endpoint=values["endpoint"],
        fetch_url=fetch_url,
        actor=actor,
        registration=values["registration"],
        activity_id=values["activityId"],
        session_id=session_id,
        session_id_generated=generated,
    )
    log.info("Launch context: registration=%s session=%s", context.registration, context.session_id)
    return context
