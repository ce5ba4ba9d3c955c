"""
One-time credential exchange.

The LMS hands out a fetch URL that yields an auth token exactly once.
POST with no body, read the token, normalize it into a header value.
A second POST to the same URL fails server-side, so callers persist the
result immediately and never call this twice for one session.
"""

import requests

from .config import log
from .constants import (
    API_TIMEOUT, EXCHANGE_CONSUMED_STATUSES, TOKEN_FIELDS,
    AUTH_SCHEMES, DEFAULT_AUTH_SCHEME,
)
from .errors import ExchangeError, ExchangeConsumedError


def extract_token(data):
    """First non-empty token field; servers disagree on the key name."""
    if not isinstance(data, dict):
        return None
    for key in TOKEN_FIELDS:
        value = data.get(key)
        if value:
            return str(value)
    return None


def normalize_auth_header(token):
    """Some LMSs return a bare base64 token and expect the caller to add the scheme."""
    token = token.strip()
    if token.startswith(AUTH_SCHEMES):
        return token
    return DEFAULT_AUTH_SCHEME + token


def exchange_once(session, fetch_url, timeout=API_TIMEOUT):
    """
    Trade the fetch URL for an Authorization header value.

    `session` must not retry POSTs. Raises ExchangeConsumedError when the
    URL was already used (401/403/410), ExchangeError for everything else.
    """
    log.info("Exchanging fetch URL for auth token (one-time use)")
    try:
        resp = session.post(fetch_url, timeout=timeout)
    except requests.RequestException as e:
        raise ExchangeError(f"Auth fetch network error: {e}") from e

    if resp.status_code in EXCHANGE_CONSUMED_STATUSES:
        log.error("Auth fetch rejected (%d) — fetch URL already used?", resp.status_code)
        raise ExchangeConsumedError(f"Auth fetch failed: HTTP {resp.status_code}")
    if not 200 <= resp.status_code < 300:
        log.error("Auth fetch failed: HTTP %d — %s", resp.status_code, resp.text[:200])
        raise ExchangeError(f"Auth fetch failed: HTTP {resp.status_code}")

    try:
        data = resp.json()
    except ValueError as e:
        raise ExchangeError("Auth fetch returned a non-JSON body") from e

    token = extract_token(data)
    if not token:
        keys = sorted(data) if isinstance(data, dict) else []
        log.error("No auth token in response. Response keys: %s", keys)
        raise ExchangeError("No auth token in response")

    header = normalize_auth_header(token)
    log.info("Auth token obtained: %s...", header[:12])
    return header
