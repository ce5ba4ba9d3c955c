"""
Exceptions raised across the engine.
"""


class Cmi5Error(Exception):
    """Base exception for the delivery engine."""


class NotConfiguredError(Cmi5Error):
    """An LRS call was attempted without an endpoint or credential."""


class ExchangeError(Cmi5Error):
    """The one-time credential exchange did not yield a usable token."""


class ExchangeConsumedError(ExchangeError):
    """The exchange URL was already used. Retrying can never succeed."""


class DeliveryError(Cmi5Error):
    """A statement or document call failed after transport retries."""

    def __init__(self, message, status=None, body=""):
        super().__init__(message)
        self.status = status
        self.body = body


class SessionInvalidatedError(DeliveryError):
    """The LRS no longer knows this session. Nothing more can be sent."""


class InvalidInteractionError(ValueError):
    """Producer input rejected before a statement was built."""
