"""Request signing for the SnapTrade API.

A deployment picks exactly one scheme through ``SNAPTRADE_AUTH_SCHEME``.
Signers never fall back to another scheme on failure.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from trader_insights.core.brokers.errors import ConfigurationError


class RequestSigner(ABC):
    """Adds authentication to an outgoing aggregator request."""

    scheme: str = ""

    def __init__(
        self,
        client_id: str,
        consumer_key: str,
        clock: Callable[[], float] = time.time,
    ):
        if not client_id or not consumer_key:
            raise ConfigurationError(
                "Missing SnapTrade configuration: client id and consumer key are required"
            )
        self.client_id = client_id.strip()
        self.consumer_key = consumer_key.strip()
        self._clock = clock

    def timestamp(self) -> str:
        return str(int(self._clock()))

    @abstractmethod
    def sign(
        self,
        path: str,
        params: Dict[str, Any],
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, str]:
        """Return headers for the request.

        May add ``clientId``/``timestamp`` to ``params`` in place, since
        some schemes sign over the query string.

        Args:
            path: Full URL path, e.g. ``/api/v1/accounts``
            params: Query parameters (mutated)
            body: JSON body or None

        Returns:
            Headers to merge into the request
        """
        ...


class HmacJsonSigner(RequestSigner):
    """HMAC-SHA256 over ``{"content", "path", "query"}`` JSON, base64 encoded."""

    scheme = "hmac_json"

    def sign(self, path, params, body):
        ts = self.timestamp()
        params["clientId"] = self.client_id
        params["timestamp"] = ts

        payload = json.dumps(
            {"content": body, "path": path, "query": urlencode(params)},
            separators=(",", ":"),
            sort_keys=True,
        )
        digest = hmac.new(
            self.consumer_key.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).digest()

        return {
            "Signature": base64.b64encode(digest).decode("ascii"),
            "Timestamp": ts,
            "ClientId": self.client_id,
        }


class HmacTimestampSigner(RequestSigner):
    """HMAC-SHA256 hex digest of ``clientId + timestamp``."""

    scheme = "hmac"

    def sign(self, path, params, body):
        ts = self.timestamp()
        params["clientId"] = self.client_id
        params["timestamp"] = ts

        signature = hmac.new(
            self.consumer_key.encode("utf-8"),
            f"{self.client_id}{ts}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        return {
            "Signature": signature,
            "Timestamp": ts,
            "ClientId": self.client_id,
        }


class ApiKeySigner(RequestSigner):
    """Consumer key sent verbatim in ``x-api-key``."""

    scheme = "api_key"

    def sign(self, path, params, body):
        params["clientId"] = self.client_id
        return {"x-api-key": self.consumer_key}


SIGNERS = {
    HmacJsonSigner.scheme: HmacJsonSigner,
    HmacTimestampSigner.scheme: HmacTimestampSigner,
    ApiKeySigner.scheme: ApiKeySigner,
}


def get_signer(scheme: str, client_id: str, consumer_key: str) -> RequestSigner:
    """Build the signer for a configured scheme."""
    signer_cls = SIGNERS.get((scheme or "").lower())
    if signer_cls is None:
        raise ConfigurationError(
            f"Unknown SnapTrade auth scheme '{scheme}'. Use one of: {', '.join(SIGNERS)}"
        )
    return signer_cls(client_id, consumer_key)
