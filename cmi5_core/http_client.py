"""
HTTP sessions with connection pooling, bounded retry and CA bundle lookup.

Two kinds of session are used:
  - retrying: LRS statement PUTs and document GETs. urllib3 backs off on
    5xx / connection errors and gives up after a few attempts.
  - non-retrying (retries=0): the one-time credential exchange, which must
    never be re-posted, and the blocking teardown path, which has no time.
"""

import os

import certifi
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import log
from .constants import TRANSPORT_RETRIES, BACKOFF_FACTOR, RETRY_STATUSES


def build_retry(retries=TRANSPORT_RETRIES, backoff_factor=BACKOFF_FACTOR):
    """Retry policy for idempotent LRS calls (statement PUT is keyed by id)."""
    return Retry(
        total=retries,
        backoff_factor=backoff_factor,          # 1s, 2s, 4s between retries
        status_forcelist=list(RETRY_STATUSES),
        allowed_methods=["HEAD", "GET", "PUT"],
        raise_on_status=False,                  # hand the last response back
    )


def _get_ca_bundle():
    """Priority: env var → certifi."""
    env_ca = os.environ.get("REQUESTS_CA_BUNDLE") or os.environ.get("SSL_CERT_FILE")
    if env_ca and os.path.isfile(env_ca):
        return env_ca
    return certifi.where()


def create_session(retries=TRANSPORT_RETRIES, backoff_factor=BACKOFF_FACTOR):
    """Create a requests.Session with pooling, retry and SSL verification."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=1,
        pool_maxsize=3,
        max_retries=build_retry(retries, backoff_factor) if retries else 0,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.verify = _get_ca_bundle()
    return session


def reset_session(session, retries=TRANSPORT_RETRIES, backoff_factor=BACKOFF_FACTOR):
    """Close and recreate a session (fixes stale pooled connections)."""
    try:
        session.close()
    except Exception as e:
        log.debug("Closing stale HTTP session failed: %s", e)
    return create_session(retries, backoff_factor)
