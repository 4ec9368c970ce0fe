"""FastAPI dependencies."""

from __future__ import annotations

import threading
from typing import Dict, Generator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from trader_insights.config import get_settings
from trader_insights.core.brokers import (
    BrokerDataStore,
    ConfigurationError,
    CredentialStore,
    SnapTradeClient,
)
from trader_insights.db.database import get_db as db_context
from trader_insights.db.models import User

settings = get_settings()


def get_db() -> Generator[Session, None, None]:
    """Yield a database session."""
    with db_context() as db:
        yield db


def _default_user(db: Session) -> User:
    default_user = db.query(User).filter_by(email=settings.default_user_email).first()
    if not default_user:
        default_user = User(email=settings.default_user_email, is_active=True)
        db.add(default_user)
        db.flush()
    return default_user


def get_current_user(
    db: Session = Depends(get_db),
    x_api_key: Optional[str] = Header(None),
) -> User:
    """Get the current user.

    Single-user mode: with no API_KEY configured every request acts as the
    default user. With API_KEY set, the X-API-Key header must match it.
    """
    if not settings.api_key or x_api_key == settings.api_key:
        return _default_user(db)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "ApiKey"},
    )


_client: Optional[SnapTradeClient] = None
_client_lock = threading.Lock()


def get_snaptrade_client() -> SnapTradeClient:
    """Shared SnapTrade client. 503 when the aggregator is not configured."""
    global _client
    with _client_lock:
        if _client is None:
            try:
                _client = SnapTradeClient.from_settings()
            except ConfigurationError as e:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail=e.message,
                )
        return _client


class StoreRegistry:
    """Per-user broker data stores held for the life of the process."""

    def __init__(self):
        self._stores: Dict[str, BrokerDataStore] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, client: SnapTradeClient) -> BrokerDataStore:
        with self._lock:
            store = self._stores.get(user_id)
            if store is None or store.client is not client:
                store = BrokerDataStore(client)
                self._stores[user_id] = store
            return store

    def clear(self) -> None:
        with self._lock:
            self._stores.clear()


store_registry = StoreRegistry()


def get_broker_store(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: SnapTradeClient = Depends(get_snaptrade_client),
) -> BrokerDataStore:
    """The user's data store, bound to their current credential."""
    store = store_registry.get(user.id, client)
    store.credential = CredentialStore(db).get(user.id)
    return store
