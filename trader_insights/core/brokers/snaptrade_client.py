"""SnapTrade aggregator client.

Thin wrapper over the SnapTrade REST API: every call is signed with the
deployment's configured scheme and every response is normalized into the
models in ``trader_insights.core.brokers.models``.

Setup:
1. Create a SnapTrade partner account and get a client id and consumer key
2. Set SNAPTRADE_CLIENT_ID, SNAPTRADE_CONSUMER_KEY, SNAPTRADE_REDIRECT_URI in your .env
3. Optionally set SNAPTRADE_AUTH_SCHEME (hmac_json, hmac or api_key)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from trader_insights.config import Settings, get_settings
from trader_insights.core.brokers.errors import (
    ConfigurationError,
    TransportError,
    UserAlreadyExistsError,
)
from trader_insights.core.brokers.models import (
    Account,
    Balance,
    Brokerage,
    BrokerOrder,
    Connection,
    ConnectionLink,
    Position,
    SnapTradeUser,
)
from trader_insights.core.brokers.normalize import (
    normalize_account,
    normalize_balance,
    normalize_brokerage,
    normalize_connection,
    normalize_connection_link,
    normalize_many,
    normalize_order,
    normalize_position,
    normalize_user,
)
from trader_insights.core.brokers.rate_limit import RequestRateLimiter
from trader_insights.core.brokers.signing import RequestSigner, get_signer

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.snaptrade.com/api/v1"

ALREADY_EXISTS_MARKERS = ("already exist", "already registered")


def _require(**values: str) -> None:
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValueError(f"{', '.join(missing)} required")


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    if isinstance(body, str) and body:
        return body
    return default


class SnapTradeClient:
    """Signed REST client for the SnapTrade API."""

    def __init__(
        self,
        signer: RequestSigner,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        rate_limiter: Optional[RequestRateLimiter] = None,
    ):
        """Initialize client.

        Args:
            signer: Request signer for the deployment's auth scheme
            base_url: API root including the version prefix
            session: Optional requests session (injected in tests)
            timeout: Per-request timeout in seconds
            rate_limiter: Optional per-user budget for account reads
        """
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._base_path = urlparse(self.base_url).path

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SnapTradeClient":
        """Build a client from application settings."""
        settings = settings or get_settings()
        if not settings.snaptrade_client_id or not settings.snaptrade_consumer_key:
            raise ConfigurationError(
                "SnapTrade not configured - set SNAPTRADE_CLIENT_ID and SNAPTRADE_CONSUMER_KEY"
            )
        signer = get_signer(
            settings.snaptrade_auth_scheme,
            settings.snaptrade_client_id,
            settings.snaptrade_consumer_key,
        )
        limiter = None
        if settings.snaptrade_rate_limit_max > 0:
            limiter = RequestRateLimiter(
                max_requests=settings.snaptrade_rate_limit_max,
                window=timedelta(minutes=settings.snaptrade_rate_limit_window_minutes),
            )
        logger.info(f"SnapTrade client initialized (auth={signer.scheme})")
        return cls(
            signer=signer,
            base_url=settings.snaptrade_base_url,
            timeout=settings.http_timeout_seconds,
            rate_limiter=limiter,
        )

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a signed request and return the decoded JSON body."""
        params = {k: v for k, v in (params or {}).items() if v is not None}
        path = f"{self._base_path}{endpoint}"
        headers = {"Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"
        headers.update(self.signer.sign(path, params, body))

        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"SnapTrade {method} {endpoint} failed: {e}")
            raise TransportError(f"SnapTrade request failed: {e}") from e

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        if response.status_code >= 400:
            message = _error_message(data, f"HTTP error {response.status_code}")
            logger.error(f"SnapTrade {method} {endpoint} returned {response.status_code}: {message}")
            raise TransportError(message, status_code=response.status_code, body=data)

        return data

    def _reserve(self, user_id: str) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(user_id)

    def check_status(self) -> Dict[str, Any]:
        """Check the SnapTrade API status."""
        return self._request("GET", "/") or {}

    def register_user(self, user_id: str) -> SnapTradeUser:
        """Register a user with SnapTrade.

        Raises:
            UserAlreadyExistsError: The aggregator already has this user id
        """
        _require(user_id=user_id)
        user_id = user_id.strip()
        try:
            data = self._request("POST", "/snapTrade/registerUser", body={"userId": user_id})
        except TransportError as e:
            if e.status_code in (400, 409) and any(
                marker in e.message.lower() for marker in ALREADY_EXISTS_MARKERS
            ):
                raise UserAlreadyExistsError(e.message, status_code=e.status_code, body=e.body) from e
            raise

        logger.info(f"Registered SnapTrade user {user_id}")
        return normalize_user(data or {}, fallback_user_id=user_id)

    def delete_user(self, user_id: str) -> None:
        """Delete a user and all of their connections from SnapTrade."""
        _require(user_id=user_id)
        self._request("DELETE", "/snapTrade/deleteUser", params={"userId": user_id})
        logger.info(f"Deleted SnapTrade user {user_id}")

    def create_connection_link(
        self,
        user_id: str,
        user_secret: str,
        broker_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> ConnectionLink:
        """Create a connection portal link for a user.

        Raises:
            MissingRedirectError: Response had no redirect URL
        """
        _require(user_id=user_id, user_secret=user_secret)
        body: Dict[str, Any] = {}
        if broker_id:
            body["broker"] = broker_id
        if redirect_uri:
            body["customRedirect"] = redirect_uri
            body["immediateRedirect"] = True

        data = self._request(
            "POST",
            "/snapTrade/login",
            params={"userId": user_id, "userSecret": user_secret},
            body=body,
        )
        return normalize_connection_link(data)

    def list_brokerages(self) -> List[Brokerage]:
        """List brokerages supported by the aggregator."""
        return normalize_many(self._request("GET", "/brokerages"), normalize_brokerage)

    def list_connections(self, user_id: str, user_secret: str) -> List[Connection]:
        """List brokerage authorizations for a user."""
        _require(user_id=user_id, user_secret=user_secret)
        data = self._request(
            "GET",
            "/authorizations",
            params={"userId": user_id, "userSecret": user_secret},
        )
        return normalize_many(data, normalize_connection)

    def delete_connection(self, user_id: str, user_secret: str, authorization_id: str) -> None:
        """Remove a brokerage authorization."""
        _require(user_id=user_id, user_secret=user_secret, authorization_id=authorization_id)
        self._request(
            "DELETE",
            f"/authorizations/{authorization_id}",
            params={"userId": user_id, "userSecret": user_secret},
        )

    def get_accounts(self, user_id: str, user_secret: str) -> List[Account]:
        """List accounts across all of a user's connections."""
        _require(user_id=user_id, user_secret=user_secret)
        data = self._request(
            "GET",
            "/accounts",
            params={"userId": user_id, "userSecret": user_secret},
        )
        return normalize_many(data, normalize_account)

    def get_positions(self, user_id: str, user_secret: str, account_id: str) -> List[Position]:
        """List open positions for an account."""
        _require(user_id=user_id, user_secret=user_secret, account_id=account_id)
        self._reserve(user_id)
        data = self._request(
            "GET",
            f"/accounts/{account_id}/positions",
            params={"userId": user_id, "userSecret": user_secret},
        )
        return normalize_many(data, normalize_position, account_id)

    def get_balances(self, user_id: str, user_secret: str, account_id: str) -> List[Balance]:
        """List cash balances for an account."""
        _require(user_id=user_id, user_secret=user_secret, account_id=account_id)
        self._reserve(user_id)
        data = self._request(
            "GET",
            f"/accounts/{account_id}/balances",
            params={"userId": user_id, "userSecret": user_secret},
        )
        return normalize_many(data, normalize_balance, account_id)

    def get_orders(
        self,
        user_id: str,
        user_secret: str,
        account_id: str,
        state: str = "all",
    ) -> List[BrokerOrder]:
        """List recent orders for an account."""
        _require(user_id=user_id, user_secret=user_secret, account_id=account_id)
        self._reserve(user_id)
        data = self._request(
            "GET",
            f"/accounts/{account_id}/orders",
            params={"userId": user_id, "userSecret": user_secret, "state": state},
        )
        return normalize_many(data, normalize_order, account_id)
