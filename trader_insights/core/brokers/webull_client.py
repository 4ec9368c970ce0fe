"""Webull-compatible direct-login client.

Unlike SnapTrade, Webull is reached with the user's own login. The session
token lives only in this client instance; nothing is persisted. Orders are
normalized into the same ``BrokerOrder`` model as the aggregator path so
journal reconciliation is shared.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

from trader_insights.config import Settings, get_settings
from trader_insights.core.brokers.errors import NotAuthenticatedError, TransportError
from trader_insights.core.brokers.models import Account, BrokerOrder, Position
from trader_insights.core.brokers.normalize import (
    normalize_many,
    normalize_order,
    normalize_position,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Salt the Webull app applies before hashing the password
PASSWORD_SALT = "wl_app-a&b@!423^"
DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)


@dataclass
class WebullCredentials:
    """Login details for a Webull account."""

    username: str
    password: str
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    mfa_code: Optional[str] = None


@dataclass
class WebullAuth:
    """Tokens returned by login or refresh."""

    access_token: str
    refresh_token: str
    token_expiry: datetime
    uuid: str


def hash_password(password: str) -> str:
    return hashlib.md5(f"{PASSWORD_SALT}{password}".encode("utf-8")).hexdigest()


class WebullClient:
    """Session-scoped client for a Webull-compatible trading API."""

    def __init__(
        self,
        base_url: str,
        device_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
        device_name: str = "TraderInsights",
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id or str(uuid.uuid4())
        self.device_name = device_name
        self.session = session or requests.Session()
        self.timeout = timeout

        self.auth: Optional[WebullAuth] = None
        self.account_id: Optional[str] = None
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WebullClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.webull_base_url,
            device_name=settings.webull_device_name,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.auth is not None

    def init(self) -> None:
        """Set device headers on the HTTP session."""
        self.session.headers.update(
            {
                "did": self.device_id,
                "app": "global",
                "platform": "web",
                "Content-Type": "application/json",
            }
        )
        self._initialized = True

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self._initialized:
            self.init()
        headers = {}
        if self.auth is not None:
            headers["access_token"] = self.auth.access_token

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
            logger.error(f"Webull {method} {endpoint} failed: {e}")
            raise TransportError(f"Webull request failed: {e}") from e

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        if response.status_code >= 400:
            message = f"HTTP error {response.status_code}"
            if isinstance(data, dict):
                message = data.get("msg") or data.get("message") or message
            logger.error(f"Webull {method} {endpoint} returned {response.status_code}: {message}")
            raise TransportError(message, status_code=response.status_code, body=data)
        return data

    def _require_auth(self) -> None:
        if self.auth is None:
            raise NotAuthenticatedError("Not authenticated. Please login first.")

    def _parse_auth(self, data: Dict[str, Any]) -> WebullAuth:
        data = data or {}
        access_token = data.get("accessToken") or data.get("access_token")
        if not access_token:
            raise TransportError("Webull login response missing access token", body=data)
        expiry = parse_timestamp(data.get("tokenExpireTime") or data.get("tokenExpiry"))
        return WebullAuth(
            access_token=access_token,
            refresh_token=data.get("refreshToken") or data.get("refresh_token") or "",
            token_expiry=expiry or datetime.utcnow() + DEFAULT_TOKEN_LIFETIME,
            uuid=str(data.get("uuid") or ""),
        )

    def login(self, credentials: WebullCredentials) -> WebullAuth:
        """Log in with username/password (and MFA code if required)."""
        if not credentials.username or not credentials.password:
            raise ValueError("username and password required")
        if credentials.device_id:
            self.device_id = credentials.device_id
            self._initialized = False

        body = {
            "account": credentials.username,
            "accountType": 2 if "@" in credentials.username else 1,
            "deviceId": self.device_id,
            "deviceName": credentials.device_name or self.device_name,
            "grade": 1,
            "pwd": hash_password(credentials.password),
            "regionId": 6,
        }
        if credentials.mfa_code:
            body["extInfo"] = {"codeAccountType": 0, "verificationCode": credentials.mfa_code}

        self.auth = self._parse_auth(self._request("POST", "/passport/login/v5/account", body=body))
        logger.info("Logged in to Webull")
        return self.auth

    def refresh(self, refresh_token: str) -> WebullAuth:
        """Exchange a refresh token for a new access token."""
        if not refresh_token:
            raise ValueError("refresh_token required")
        data = self._request("POST", "/passport/refreshToken", params={"refreshToken": refresh_token})
        self.auth = self._parse_auth(data)
        return self.auth

    def _ensure_account_id(self) -> str:
        if self.account_id is None:
            data = self._request("GET", "/account/getSecAccountList/v5")
            accounts = data.get("data", []) if isinstance(data, dict) else data or []
            if not accounts:
                raise TransportError("No Webull trading account found", body=data)
            self.account_id = str(accounts[0].get("secAccountId") or accounts[0].get("accountId"))
        return self.account_id

    def fetch_trades(
        self,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[BrokerOrder]:
        """Fetch orders, optionally filtered by status and time window."""
        self._require_auth()
        account_id = self._ensure_account_id()
        params = {
            "secAccountId": account_id,
            "status": status or "all",
            "startTime": start.isoformat() if start else None,
            "endTime": end.isoformat() if end else None,
        }
        data = self._request(
            "GET",
            "/trading/v1/webull/orders",
            params={k: v for k, v in params.items() if v is not None},
        )
        orders = normalize_many(data, normalize_order, account_id)
        logger.info(f"Fetched {len(orders)} Webull order(s)")
        return orders

    def get_positions(self) -> List[Position]:
        self._require_auth()
        account_id = self._ensure_account_id()
        data = self._request("GET", "/trading/v1/webull/positions", params={"secAccountId": account_id})
        return normalize_many(data, normalize_position, account_id)

    def get_account(self) -> Account:
        self._require_auth()
        account_id = self._ensure_account_id()
        data = self._request("GET", "/trading/v1/webull/account", params={"secAccountId": account_id}) or {}
        net_liquidation = data.get("netLiquidation")
        return Account(
            id=str(data.get("accountId") or account_id),
            name="Webull",
            type=data.get("accountType"),
            number=data.get("brokerAccountId"),
            institution_name="Webull",
            balance=float(net_liquidation) if net_liquidation is not None else None,
            currency=str(data.get("currency") or "USD").upper(),
        )

    def logout(self) -> None:
        """End the session. A no-op when not logged in."""
        if self.auth is None:
            return
        try:
            self._request("GET", "/passport/login/logout")
        finally:
            self.auth = None
            self.account_id = None
            logger.info("Logged out of Webull")
