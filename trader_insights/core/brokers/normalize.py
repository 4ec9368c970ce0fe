"""Normalize aggregator responses into canonical broker models.

Aggregator payloads are loosely shaped: fields come and go, casing varies
(``redirectURI`` / ``redirectUri`` / ``redirect_uri``) and symbols may be
nested several levels deep. These functions are the only place that knows
about those variants; everything downstream works with the dataclasses in
``models``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from trader_insights.core.brokers.errors import MissingRedirectError, TransportError
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

logger = logging.getLogger(__name__)

REDIRECT_KEYS = ("redirectURI", "redirectUri", "redirect_uri", "loginRedirectURI", "url")


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    """Return the first key present with a non-empty value."""
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = _first(value, "amount", "value")
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _currency_code(value: Any, default: str = "USD") -> str:
    if isinstance(value, dict):
        value = _first(value, "code", "id")
    return str(value).upper() if value else default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings or epoch seconds/milliseconds into naive UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparseable timestamp: {value!r}")
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _symbol_text(value: Any) -> Optional[str]:
    """Dig a ticker out of nested symbol objects.

    Handles ``"AAPL"``, ``{"symbol": "AAPL"}`` and
    ``{"symbol": {"symbol": {"symbol": "AAPL"}}}``.
    """
    depth = 0
    while isinstance(value, dict) and depth < 4:
        value = _first(value, "symbol", "raw_symbol", "ticker")
        depth += 1
    if isinstance(value, str) and value:
        return value.upper()
    return None


def normalize_user(raw: Dict[str, Any], fallback_user_id: Optional[str] = None) -> SnapTradeUser:
    """Registration response -> SnapTradeUser."""
    user_id = _first(raw, "userId", "user_id", "userID") or fallback_user_id
    user_secret = _first(raw, "userSecret", "user_secret")
    if not user_id or not user_secret:
        raise TransportError("Registration response missing userId or userSecret", body=raw)
    return SnapTradeUser(user_id=str(user_id), user_secret=str(user_secret))


def normalize_connection_link(raw: Any) -> ConnectionLink:
    """Login/connection-link response -> ConnectionLink.

    Raises MissingRedirectError when the response carries no URL.
    """
    if isinstance(raw, str) and raw:
        return ConnectionLink(redirect_uri=raw)
    if not isinstance(raw, dict):
        raise MissingRedirectError("Failed to get authorization URL", body=raw)

    redirect = _first(raw, *REDIRECT_KEYS)
    if not redirect:
        raise MissingRedirectError("Failed to get authorization URL", body=raw)

    session_id = _first(raw, "sessionId", "session_id", "sessionID")
    return ConnectionLink(
        redirect_uri=str(redirect),
        session_id=str(session_id) if session_id else None,
    )


def normalize_connection(raw: Dict[str, Any]) -> Connection:
    conn_id = str(_first(raw, "id", "connectionId", "connection_id") or "")
    authorization_id = _first(
        raw,
        "brokerageAuthorizationId",
        "brokerage_authorization_id",
        "authorizationId",
        "authorization_id",
    )
    brokerage = raw.get("brokerage")
    brokerage_name = _first(raw, "brokerageName", "brokerage_name")
    if not brokerage_name and isinstance(brokerage, dict):
        brokerage_name = brokerage.get("name")

    status = _first(raw, "status")
    if status is None:
        status = "DISABLED" if raw.get("disabled") else "ACTIVE"

    return Connection(
        id=conn_id,
        brokerage_authorization_id=str(authorization_id or conn_id),
        status=str(status).upper(),
        brokerage_name=brokerage_name,
        created_at=parse_timestamp(_first(raw, "createdAt", "created_at", "created_date")),
    )


def normalize_account(raw: Dict[str, Any]) -> Account:
    balance = raw.get("balance")
    total = None
    currency = "USD"
    if isinstance(balance, dict):
        total_raw = balance.get("total", balance)
        total = _to_float(total_raw)
        if isinstance(total_raw, dict):
            currency = _currency_code(total_raw.get("currency"))
    else:
        total = _to_float(balance)

    meta = raw.get("meta") if isinstance(raw.get("meta"), dict) else {}
    return Account(
        id=str(_first(raw, "id", "accountId", "account_id")),
        name=str(_first(raw, "name", "accountName", "account_name") or "Account"),
        type=_first(raw, "type", "accountType", "account_type") or meta.get("type"),
        number=_first(raw, "number", "accountNumber", "account_number"),
        institution_name=str(
            _first(raw, "institutionName", "institution_name", "brokerageName") or "Unknown"
        ),
        balance=total,
        currency=_currency_code(_first(raw, "currency"), currency),
    )


def normalize_position(raw: Dict[str, Any], account_id: str) -> Optional[Position]:
    """Position payload -> Position, or None if it has no ticker."""
    symbol_obj = raw.get("symbol")
    symbol = _symbol_text(symbol_obj)
    if not symbol:
        return None

    currency = "USD"
    if isinstance(symbol_obj, dict):
        inner = symbol_obj.get("symbol")
        if isinstance(inner, dict):
            currency = _currency_code(inner.get("currency"))

    return Position(
        account_id=account_id,
        symbol=symbol,
        quantity=_to_float(_first(raw, "units", "quantity", "fractional_units")) or 0.0,
        price=_to_float(_first(raw, "price", "lastPrice", "last_price")),
        average_entry_price=_to_float(
            _first(raw, "average_purchase_price", "averageEntryPrice", "avgCost", "avg_cost")
        ),
        open_pnl=_to_float(_first(raw, "open_pnl", "openPnl", "unrealizedPnl")),
        currency=_currency_code(raw.get("currency"), currency),
    )


def normalize_balance(raw: Dict[str, Any], account_id: str) -> Balance:
    return Balance(
        account_id=account_id,
        currency=_currency_code(raw.get("currency")),
        cash=_to_float(_first(raw, "cash", "totalCash", "total_cash")),
        buying_power=_to_float(_first(raw, "buying_power", "buyingPower")),
    )


def normalize_order(raw: Dict[str, Any], account_id: Optional[str] = None) -> Optional[BrokerOrder]:
    """Order payload (SnapTrade or Webull shaped) -> BrokerOrder."""
    symbol = _symbol_text(_first(raw, "universal_symbol", "symbol", "ticker"))
    order_id = _first(raw, "brokerage_order_id", "orderId", "order_id", "id")
    if not symbol or not order_id:
        return None

    return BrokerOrder(
        order_id=str(order_id),
        account_id=account_id or _first(raw, "accountId", "account_id"),
        symbol=symbol,
        action=str(_first(raw, "action", "side") or "BUY").upper(),
        status=str(_first(raw, "status") or "PENDING").upper(),
        quantity=_to_float(_first(raw, "total_quantity", "quantity", "totalQuantity")) or 0.0,
        filled_quantity=_to_float(_first(raw, "filled_quantity", "filledQuantity")),
        price=_to_float(_first(raw, "limit_price", "price", "limitPrice")),
        filled_price=_to_float(_first(raw, "execution_price", "filledPrice", "avgFilledPrice")),
        order_type=_first(raw, "order_type", "orderType"),
        time_in_force=_first(raw, "time_in_force", "timeInForce"),
        commission=_to_float(_first(raw, "commission", "fees")) or 0.0,
        executed_at=parse_timestamp(
            _first(raw, "time_executed", "filledTime", "updateTime", "time_placed", "createTime")
        ),
    )


def normalize_brokerage(raw: Dict[str, Any]) -> Brokerage:
    name = str(_first(raw, "display_name", "name") or "Unknown")
    slug = _first(raw, "slug") or name.replace(" ", "_").upper()
    return Brokerage(
        id=str(_first(raw, "id", "slug") or slug),
        name=name,
        slug=str(slug),
        logo_url=_first(raw, "aws_s3_logo_url", "logo", "logo_url"),
        enabled=bool(raw.get("enabled", True)),
    )


def normalize_many(items: Any, normalizer, *args) -> List[Any]:
    """Apply a normalizer to a list payload, dropping entries it rejects."""
    if isinstance(items, dict):
        # Some endpoints wrap the list, e.g. {"results": [...]} or {"orders": [...]}
        for key in ("results", "data", "orders", "accounts", "positions", "balances"):
            if isinstance(items.get(key), list):
                items = items[key]
                break
        else:
            items = [items]
    if not isinstance(items, Iterable) or isinstance(items, (str, bytes)):
        return []

    normalized = []
    for item in items:
        if not isinstance(item, dict):
            continue
        value = normalizer(item, *args)
        if value is not None:
            normalized.append(value)
    return normalized
