"""Broker connection API routes."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from trader_insights.api.deps import (
    get_broker_store,
    get_current_user,
    get_db,
    get_snaptrade_client,
    store_registry,
)
from trader_insights.config import get_settings
from trader_insights.core.brokers import (
    BrokerDataStore,
    BrokerError,
    BrokerSyncService,
    ConfigurationError,
    ConnectionFlow,
    ConnectionNotFoundError,
    CredentialExistsError,
    CredentialStore,
    NotRegisteredError,
    PortalMessageChannel,
    RateLimitError,
    SessionError,
    SessionRepository,
    SnapTradeClient,
    TransportError,
)
from trader_insights.db.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/brokers", tags=["brokers"])

# Rate limiter for connection attempts
limiter = Limiter(key_func=get_remote_address)


# Request/Response Models

class BrokerStatusResponse(BaseModel):
    """Broker integration status."""

    configured: bool
    auth_scheme: str
    registered: bool
    connections: int
    accounts: int
    last_sync_time: Optional[datetime]
    is_syncing: bool
    error: Optional[str]
    api: Optional[Dict[str, Any]] = None


class BrokerageResponse(BaseModel):
    id: str
    name: str
    slug: str
    logo_url: Optional[str]
    enabled: bool


class RegisterResponse(BaseModel):
    """Aggregator registration result. The user secret is never returned."""

    user_id: str
    external_user_id: str
    registered: bool


class ConnectRequest(BaseModel):
    broker_id: Optional[str] = None


class ConnectResponse(BaseModel):
    session_id: str
    redirect_uri: str


class SessionResponse(BaseModel):
    session_id: str
    status: str
    authorization_id: Optional[str]
    error: Optional[str]


class SyncResponse(BaseModel):
    """Response for sync operation."""

    success: bool
    skipped: bool
    accounts_synced: int
    trades_created: int
    trades_updated: int
    trades_skipped: int
    errors: List[str]
    synced_at: datetime


class AccountResponse(BaseModel):
    id: str
    name: str
    type: Optional[str]
    number: Optional[str]
    institution_name: str
    balance: Optional[float]
    currency: str


class PositionResponse(BaseModel):
    symbol: str
    quantity: float
    price: Optional[float]
    average_entry_price: Optional[float]
    open_pnl: Optional[float]
    market_value: Optional[float]
    currency: str


class BalanceResponse(BaseModel):
    currency: str
    cash: Optional[float]
    buying_power: Optional[float]


class OrderResponse(BaseModel):
    order_id: str
    symbol: str
    action: str
    status: str
    quantity: float
    filled_quantity: Optional[float]
    price: Optional[float]
    filled_price: Optional[float]
    order_type: Optional[str]
    commission: float
    executed_at: Optional[datetime]


# Helpers

def _http_error(e: BrokerError) -> HTTPException:
    """Map a broker error to an HTTP error."""
    if isinstance(e, ConfigurationError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, RateLimitError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(e, (NotRegisteredError, ConnectionNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, CredentialExistsError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, SessionError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, TransportError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=e.message)


def _build_flow(
    db: Session,
    client: SnapTradeClient,
    store: BrokerDataStore,
    navigator=None,
) -> ConnectionFlow:
    settings = get_settings()
    return ConnectionFlow(
        client=client,
        credentials=CredentialStore(db),
        sessions=SessionRepository(db),
        store=store,
        redirect_uri=settings.snaptrade_redirect_uri,
        dashboard_url=settings.dashboard_url,
        navigator=navigator or (lambda url: None),
    )


def _require_credential(store: BrokerDataStore) -> None:
    if store.credential is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not registered",
        )


def _require_account(store: BrokerDataStore, account_id: str) -> None:
    if not any(account.id == account_id for account in store.accounts):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        )


# Routes

@router.get("/status", response_model=BrokerStatusResponse)
def get_broker_status(
    check: bool = Query(False, description="Also call the aggregator status endpoint"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Get broker integration status for the current user."""
    settings = get_settings()
    configured = bool(settings.snaptrade_client_id and settings.snaptrade_consumer_key)
    response = BrokerStatusResponse(
        configured=configured,
        auth_scheme=settings.snaptrade_auth_scheme,
        registered=CredentialStore(db).exists(user.id),
        connections=0,
        accounts=0,
        last_sync_time=None,
        is_syncing=False,
        error=None,
    )
    if not configured:
        return response

    client = get_snaptrade_client()
    store = get_broker_store(db, user, client)
    response.connections = len(store.connections)
    response.accounts = len(store.accounts)
    response.last_sync_time = store.last_sync_time
    response.is_syncing = store.is_syncing
    response.error = store.error

    if check:
        try:
            response.api = client.check_status()
        except BrokerError as e:
            raise _http_error(e)
    return response


@router.get("/brokerages", response_model=List[BrokerageResponse])
def list_brokerages(client: SnapTradeClient = Depends(get_snaptrade_client)):
    """List brokerages available through the aggregator."""
    try:
        brokerages = client.list_brokerages()
    except BrokerError as e:
        raise _http_error(e)

    return [
        BrokerageResponse(
            id=b.id,
            name=b.name,
            slug=b.slug,
            logo_url=b.logo_url,
            enabled=b.enabled,
        )
        for b in brokerages
    ]


@router.post("/register", response_model=RegisterResponse)
def register(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: SnapTradeClient = Depends(get_snaptrade_client),
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Register the current user with the aggregator (idempotent)."""
    already = store.credential is not None
    flow = _build_flow(db, client, store)
    try:
        credential = flow.ensure_registered(user.id)
    except BrokerError as e:
        raise _http_error(e)

    return RegisterResponse(
        user_id=user.id,
        external_user_id=credential.user_id,
        registered=not already,
    )


@router.post("/connect", response_model=ConnectResponse)
@limiter.limit("10/minute")
def connect(
    request: Request,
    payload: Optional[ConnectRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: SnapTradeClient = Depends(get_snaptrade_client),
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Start a brokerage connection and return the portal URL."""
    flow = _build_flow(db, client, store)
    try:
        session = flow.start(user.id, broker_id=payload.broker_id if payload else None)
    except BrokerError as e:
        raise _http_error(e)

    return ConnectResponse(session_id=session.session_id, redirect_uri=session.redirect_url)


@router.get("/callback")
def callback(
    session_id: str = Query(..., alias="sessionId"),
    authorization_id: Optional[str] = Query(None, alias="authorizationId"),
    db: Session = Depends(get_db),
    client: SnapTradeClient = Depends(get_snaptrade_client),
):
    """Portal redirect target. Sends the user to the dashboard on success."""
    session = SessionRepository(db).get(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired session",
        )

    destinations: List[str] = []
    store = store_registry.get(session.user_id, client)
    flow = _build_flow(db, client, store, navigator=destinations.append)
    try:
        flow.resolve_callback(session_id, authorization_id)
    except BrokerError as e:
        # Persist the session's error state before reporting
        db.commit()
        raise _http_error(e)

    return RedirectResponse(url=destinations[-1], status_code=status.HTTP_303_SEE_OTHER)


@router.post("/sessions/{session_id}/events", response_model=SessionResponse)
def post_portal_event(
    session_id: str,
    message: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: SnapTradeClient = Depends(get_snaptrade_client),
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Deliver a message posted by the embedded portal."""
    sessions = SessionRepository(db)
    session = sessions.get(session_id)
    if session is None or session.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invalid or expired session",
        )

    flow = _build_flow(db, client, store)
    flow.active_session_id = session_id
    channel = PortalMessageChannel()
    flow.attach(channel)
    try:
        event = channel.post(message)
    except BrokerError as e:
        raise _http_error(e)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unrecognized portal message",
        )

    return SessionResponse(
        session_id=session.session_id,
        status=session.status,
        authorization_id=session.authorization_id,
        error=session.error_message,
    )


@router.post("/sync", response_model=SyncResponse)
def sync(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: SnapTradeClient = Depends(get_snaptrade_client),
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Pull broker data and reconcile filled orders into the journal."""
    _require_credential(store)
    service = BrokerSyncService(db, client_factory=lambda: client)
    try:
        sync_result, reconcile_result = service.sync_user(user, store=store)
    except BrokerError as e:
        raise _http_error(e)

    return SyncResponse(
        success=sync_result.success and reconcile_result.success,
        skipped=sync_result.skipped,
        accounts_synced=sync_result.accounts_synced,
        trades_created=reconcile_result.created,
        trades_updated=reconcile_result.updated,
        trades_skipped=reconcile_result.skipped,
        errors=reconcile_result.errors,
        synced_at=sync_result.synced_at,
    )


@router.get("/accounts", response_model=List[AccountResponse])
def list_accounts(store: BrokerDataStore = Depends(get_broker_store)):
    """Accounts from the most recent sync."""
    _require_credential(store)
    return [
        AccountResponse(
            id=a.id,
            name=a.name,
            type=a.type,
            number=a.number,
            institution_name=a.institution_name,
            balance=a.balance,
            currency=a.currency,
        )
        for a in store.accounts
    ]


@router.get("/accounts/{account_id}/positions", response_model=List[PositionResponse])
def list_positions(
    account_id: str,
    refresh: bool = False,
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Positions for an account, optionally refreshed first."""
    _require_credential(store)
    _require_account(store, account_id)
    if refresh:
        store.refresh_positions(account_id)
    return [
        PositionResponse(
            symbol=p.symbol,
            quantity=p.quantity,
            price=p.price,
            average_entry_price=p.average_entry_price,
            open_pnl=p.open_pnl,
            market_value=p.market_value,
            currency=p.currency,
        )
        for p in store.positions.get(account_id, [])
    ]


@router.get("/accounts/{account_id}/balances", response_model=List[BalanceResponse])
def list_balances(
    account_id: str,
    refresh: bool = False,
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Balances for an account, optionally refreshed first."""
    _require_credential(store)
    _require_account(store, account_id)
    if refresh:
        store.refresh_balances(account_id)
    return [
        BalanceResponse(currency=b.currency, cash=b.cash, buying_power=b.buying_power)
        for b in store.balances.get(account_id, [])
    ]


@router.get("/accounts/{account_id}/orders", response_model=List[OrderResponse])
def list_orders(
    account_id: str,
    refresh: bool = False,
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Orders for an account, optionally refreshed first."""
    _require_credential(store)
    _require_account(store, account_id)
    if refresh:
        store.refresh_orders(account_id)
    return [
        OrderResponse(
            order_id=o.order_id,
            symbol=o.symbol,
            action=o.action,
            status=o.status,
            quantity=o.quantity,
            filled_quantity=o.filled_quantity,
            price=o.price,
            filled_price=o.filled_price,
            order_type=o.order_type,
            commission=o.commission,
            executed_at=o.executed_at,
        )
        for o in store.orders.get(account_id, [])
    ]


@router.delete("/connections/{authorization_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_connection(
    authorization_id: str,
    client: SnapTradeClient = Depends(get_snaptrade_client),
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Remove one brokerage authorization and resync what remains."""
    _require_credential(store)
    credential = store.credential
    try:
        client.delete_connection(credential.user_id, credential.user_secret, authorization_id)
        store.sync_all()
    except BrokerError as e:
        raise _http_error(e)


@router.delete("/connection", status_code=status.HTTP_204_NO_CONTENT)
def disconnect(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: SnapTradeClient = Depends(get_snaptrade_client),
    store: BrokerDataStore = Depends(get_broker_store),
):
    """Delete the aggregator user, the stored credential and held data."""
    _require_credential(store)
    flow = _build_flow(db, client, store)
    try:
        flow.disconnect(user.id)
    except BrokerError as e:
        raise _http_error(e)
