"""
LRS API calls — statement store-by-id, agent profile and state documents.

Async path calls go through the retrying session (urllib3 backs off on 5xx
and connection errors). What is left after retries is raised as
DeliveryError; a 401 whose body says the session is gone is raised as
SessionInvalidatedError so the queue can halt instead of requeueing.

The sync path is a single blocking PUT for teardown. It never retries and
never raises.
"""

import json

import requests

from .config import log
from .constants import (
    XAPI_VERSION, API_TIMEOUT, API_TIMEOUT_SYNC, SESSION_INVALIDATED_PATTERNS,
    LEARNER_PREFERENCES_PROFILE, LAUNCH_DATA_STATE,
)
from .errors import DeliveryError, SessionInvalidatedError, NotConfiguredError
from .statements import verb_display_name


def is_session_invalidated(status, body, patterns=SESSION_INVALIDATED_PATTERNS):
    """
    Heuristic: LRSs report a dead session as 401 plus a message.
    Wording differs between products, hence the configurable patterns.
    """
    if status != 401:
        return False
    text = (body or "").lower()
    return any(p.lower() in text for p in patterns)


class LRSClient:
    """Authenticated calls against one LRS endpoint for one session."""

    def __init__(self, endpoint, auth_header, session, sync_session=None,
                 timeout=API_TIMEOUT, sync_timeout=API_TIMEOUT_SYNC,
                 invalidation_check=None, patterns=SESSION_INVALIDATED_PATTERNS):
        if not endpoint or not auth_header:
            raise NotConfiguredError("LRS not configured (missing endpoint or auth token)")
        self.base_url = endpoint if endpoint.endswith("/") else endpoint + "/"
        self.auth_header = auth_header
        self.session = session
        self.sync_session = sync_session or session
        self.timeout = timeout
        self.sync_timeout = sync_timeout
        self._patterns = tuple(patterns)
        self._invalidation_check = invalidation_check or (
            lambda status, body: is_session_invalidated(status, body, self._patterns)
        )

    def _headers(self):
        return {
            "Authorization": self.auth_header,
            "X-Experience-API-Version": XAPI_VERSION,
        }

    def _fail(self, what, resp):
        body = resp.text or ""
        if self._invalidation_check(resp.status_code, body):
            log.error("%s rejected — LRS session no longer exists (HTTP %d)", what, resp.status_code)
            raise SessionInvalidatedError(
                f"{what} failed: HTTP {resp.status_code} - {body[:200]}",
                status=resp.status_code, body=body,
            )
        log.warning("%s failed: HTTP %d — %s", what, resp.status_code, body[:200])
        raise DeliveryError(
            f"{what} failed: HTTP {resp.status_code} - {body[:200]}",
            status=resp.status_code, body=body,
        )

    # ─── Statements ──────────────────────────────────────────────

    def put_statement(self, statement):
        """Store-by-id. Safe to repeat: the LRS dedupes on statement id."""
        what = f"Statement {_verb_name(statement)}"
        try:
            resp = self.session.put(
                self.base_url + "statements",
                params={"statementId": statement["id"]},
                json=statement,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.warning("%s network error: %s", what, e)
            raise DeliveryError(f"{what} network error: {e}") from e

        if 200 <= resp.status_code < 300:
            log.info("Statement sent: %s", _verb_name(statement))
            return statement["id"]
        self._fail(what, resp)

    def put_statement_sync(self, statement):
        """Blocking PUT for teardown. Returns True on 2xx, never raises."""
        try:
            resp = self.sync_session.put(
                self.base_url + "statements",
                params={"statementId": statement["id"]},
                json=statement,
                headers=self._headers(),
                timeout=self.sync_timeout,
            )
        except requests.RequestException as e:
            log.error("Sync statement %s failed: %s", _verb_name(statement), e)
            return False
        ok = 200 <= resp.status_code < 300
        if ok:
            log.info("Statement sent (sync): %s", _verb_name(statement))
        else:
            log.error("Sync statement %s failed: HTTP %d", _verb_name(statement), resp.status_code)
        return ok

    # ─── Documents ───────────────────────────────────────────────

    def get_document(self, path, params):
        """GET a profile/state document. 404 → None (document not present)."""
        try:
            resp = self.session.get(
                self.base_url + path,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DeliveryError(f"GET {path} network error: {e}") from e

        if resp.status_code == 404:
            log.info("Document not found (404) at %s — this is normal", path)
            return None
        if not 200 <= resp.status_code < 300:
            self._fail(f"GET {path}", resp)
        if not resp.text:
            return None
        try:
            return resp.json()
        except ValueError:
            log.warning("GET %s returned a non-JSON body — ignoring it", path)
            return None

    def get_learner_preferences(self, actor):
        return self.get_document("agents/profile", {
            "profileId": LEARNER_PREFERENCES_PROFILE,
            "agent": json.dumps(actor),
        })

    def get_launch_data(self, activity_id, actor, registration):
        return self.get_document("activities/state", {
            "stateId": LAUNCH_DATA_STATE,
            "activityId": activity_id,
            "agent": json.dumps(actor),
            "registration": registration,
        })


def _verb_name(statement):
    return verb_display_name(statement.get("verb") or {})
