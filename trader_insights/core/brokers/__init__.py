"""Broker integration module for connecting brokerages and syncing trades.

Supports:
- SnapTrade (aggregated brokerage connections)
- Webull-compatible direct login

Usage:
    from trader_insights.core.brokers import ConnectionFlow, SnapTradeClient

    client = SnapTradeClient.from_settings()
    flow = ConnectionFlow(client, CredentialStore(db), SessionRepository(db),
                          BrokerDataStore(client), redirect_uri=...)
    session = flow.start(user.id)            # user follows session.redirect_url
    flow.resolve_callback(session.session_id)  # after the portal redirects back
"""

from trader_insights.core.brokers.errors import (
    BrokerError,
    ConfigurationError,
    ConnectionNotFoundError,
    CredentialExistsError,
    MissingRedirectError,
    NotAuthenticatedError,
    NotRegisteredError,
    PartialSyncError,
    RateLimitError,
    SessionError,
    TransportError,
    UserAlreadyExistsError,
)
from trader_insights.core.brokers.models import (
    Account,
    Balance,
    Brokerage,
    BrokerOrder,
    BrokerType,
    Connection,
    ConnectionLink,
    Position,
    ReconcileResult,
    SessionStatus,
    SnapTradeUser,
    SyncResult,
)
from trader_insights.core.brokers.credentials import CredentialStore
from trader_insights.core.brokers.sessions import SessionRepository
from trader_insights.core.brokers.snaptrade_client import SnapTradeClient
from trader_insights.core.brokers.portal import (
    PortalClosed,
    PortalError,
    PortalMessageChannel,
    PortalSuccess,
    parse_portal_message,
)
from trader_insights.core.brokers.store import BrokerDataStore
from trader_insights.core.brokers.flow import ConnectionFlow, FlowState
from trader_insights.core.brokers.webull_client import WebullAuth, WebullClient, WebullCredentials
from trader_insights.core.brokers.sync import BrokerSyncService, get_broker_sync_service

__all__ = [
    # Errors
    "BrokerError",
    "ConfigurationError",
    "ConnectionNotFoundError",
    "CredentialExistsError",
    "MissingRedirectError",
    "NotAuthenticatedError",
    "NotRegisteredError",
    "PartialSyncError",
    "RateLimitError",
    "SessionError",
    "TransportError",
    "UserAlreadyExistsError",
    # Models
    "Account",
    "Balance",
    "Brokerage",
    "BrokerOrder",
    "BrokerType",
    "Connection",
    "ConnectionLink",
    "Position",
    "ReconcileResult",
    "SessionStatus",
    "SnapTradeUser",
    "SyncResult",
    # Clients
    "SnapTradeClient",
    "WebullClient",
    "WebullCredentials",
    "WebullAuth",
    # Connection flow
    "CredentialStore",
    "SessionRepository",
    "ConnectionFlow",
    "FlowState",
    "PortalMessageChannel",
    "PortalSuccess",
    "PortalError",
    "PortalClosed",
    "parse_portal_message",
    # Services
    "BrokerDataStore",
    "BrokerSyncService",
    "get_broker_sync_service",
]
