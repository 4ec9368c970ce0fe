"""Broker integration data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class BrokerType(str, Enum):
    """Supported broker integrations."""

    SNAPTRADE = "snaptrade"
    WEBULL = "webull"


class SessionStatus(str, Enum):
    """Lifecycle of a connection session."""

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class SnapTradeUser:
    """Aggregator identity for a local user."""

    user_id: str
    user_secret: str


@dataclass
class ConnectionLink:
    """Portal URL returned when starting a connection."""

    redirect_uri: str
    session_id: Optional[str] = None


@dataclass
class Brokerage:
    """A brokerage the aggregator can connect to."""

    id: str
    name: str
    slug: str
    logo_url: Optional[str] = None
    enabled: bool = True


@dataclass
class Connection:
    """Aggregator-reported brokerage authorization."""

    id: str
    brokerage_authorization_id: str
    status: str
    brokerage_name: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Account:
    """A brokerage account visible through a connection."""

    id: str
    name: str
    type: Optional[str]
    number: Optional[str]
    institution_name: str
    balance: Optional[float] = None
    currency: str = "USD"


@dataclass
class Position:
    """An open position in an account."""

    account_id: str
    symbol: str
    quantity: float
    price: Optional[float]
    average_entry_price: Optional[float]
    open_pnl: Optional[float] = None
    currency: str = "USD"

    @property
    def market_value(self) -> Optional[float]:
        """Position value at the last price."""
        if self.price is None:
            return None
        return self.quantity * self.price


@dataclass
class Balance:
    """Cash balance for one currency in an account."""

    account_id: str
    currency: str
    cash: Optional[float]
    buying_power: Optional[float] = None


@dataclass
class BrokerOrder:
    """An order from any broker, normalized.

    ``action`` is BUY or SELL. ``status`` is upper-cased broker status,
    e.g. FILLED, EXECUTED, PENDING, CANCELED.
    """

    order_id: str
    account_id: Optional[str]
    symbol: str
    action: str
    status: str
    quantity: float
    filled_quantity: Optional[float] = None
    price: Optional[float] = None
    filled_price: Optional[float] = None
    order_type: Optional[str] = None
    time_in_force: Optional[str] = None
    commission: float = 0.0
    executed_at: Optional[datetime] = None

    @property
    def is_filled(self) -> bool:
        return self.status in ("FILLED", "EXECUTED")


@dataclass
class SyncResult:
    """Result of a full broker data sync."""

    success: bool
    accounts_synced: int
    errors: List[str]
    synced_at: datetime
    skipped: bool = False


@dataclass
class ReconcileResult:
    """Result of reconciling broker orders into journal trades."""

    fetched: int
    created: int
    updated: int
    skipped: int
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors
