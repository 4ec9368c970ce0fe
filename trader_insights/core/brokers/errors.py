"""Broker integration errors.

Every error carries a ``kind`` so callers can branch on the category
instead of parsing message text:

- ``configuration``: missing client id / consumer key / redirect URI
- ``transport``: non-2xx or network failure talking to a broker API
- ``session``: missing, expired or already-resolved connection state
- ``partial``: one collection of a sync failed while others succeeded
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class BrokerError(Exception):
    """Base class for broker integration errors."""

    kind = "broker"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(BrokerError):
    """Required broker configuration is missing."""

    kind = "configuration"


class TransportError(BrokerError):
    """A broker API call failed or returned a non-2xx status."""

    kind = "transport"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (status {self.status_code})"


class UserAlreadyExistsError(TransportError):
    """Registration conflict: the aggregator already knows this user id."""


class MissingRedirectError(TransportError):
    """Connection link response had no redirect URL."""


class RateLimitError(TransportError):
    """Local request budget for a user is exhausted."""

    def __init__(self, reset_at: datetime):
        super().__init__("Rate limit exceeded", status_code=429)
        self.reset_at = reset_at


class SessionError(BrokerError):
    """Connection session is missing, expired or already processed."""

    kind = "session"


class ConnectionNotFoundError(SessionError):
    """Callback fired but the aggregator has no matching authorization."""


class NotRegisteredError(SessionError):
    """No aggregator credential stored for the user."""


class CredentialExistsError(SessionError):
    """A credential is already stored; disconnect before re-registering."""


class NotAuthenticatedError(SessionError):
    """Broker client used before login."""


class PartialSyncError(BrokerError):
    """One per-account collection failed to refresh."""

    kind = "partial"

    def __init__(self, account_id: str, collection: str, message: str):
        super().__init__(f"{collection} refresh failed for account {account_id}: {message}")
        self.account_id = account_id
        self.collection = collection
