"""Broker data sync store.

Holds the latest snapshot of a user's connections, accounts and
per-account positions, balances and orders. Every refresh replaces its
collection wholesale; a failed refresh leaves the previous value in place
and records the error.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from trader_insights.core.brokers.errors import NotRegisteredError, PartialSyncError
from trader_insights.core.brokers.models import (
    Account,
    Balance,
    BrokerOrder,
    Connection,
    Position,
    SnapTradeUser,
    SyncResult,
)
from trader_insights.core.brokers.snaptrade_client import SnapTradeClient

logger = logging.getLogger(__name__)

StoreListener = Callable[["BrokerDataStore"], None]


class BrokerDataStore:
    """Observable snapshot of broker data for one aggregator user."""

    def __init__(self, client: SnapTradeClient, credential: Optional[SnapTradeUser] = None):
        self.client = client
        self.credential = credential

        self.connections: List[Connection] = []
        self.accounts: List[Account] = []
        self.positions: Dict[str, List[Position]] = {}
        self.balances: Dict[str, List[Balance]] = {}
        self.orders: Dict[str, List[BrokerOrder]] = {}
        self.last_sync_time: Optional[datetime] = None
        self.error: Optional[str] = None

        self._sync_lock = threading.Lock()
        self._listeners: List[StoreListener] = []

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener called after every state change.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Store listener failed: {e}")

    def _require_credential(self) -> SnapTradeUser:
        if self.credential is None:
            raise NotRegisteredError("User not registered")
        return self.credential

    def sync_all(self) -> SyncResult:
        """Pull connections and accounts, then every account's collections.

        A call made while another sync is running is skipped.

        Raises:
            NotRegisteredError: No credential
            TransportError: Connections or accounts could not be fetched
        """
        credential = self._require_credential()

        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return SyncResult(
                success=False,
                accounts_synced=0,
                errors=[],
                synced_at=datetime.utcnow(),
                skipped=True,
            )

        try:
            self.error = None
            self._notify()

            try:
                connections = self.client.list_connections(credential.user_id, credential.user_secret)
                accounts = self.client.get_accounts(credential.user_id, credential.user_secret)
            except Exception as e:
                logger.error(f"Sync failed fetching connections/accounts: {e}")
                self.error = str(e)
                self._notify()
                raise

            self.connections = connections
            self.accounts = accounts
            self.last_sync_time = datetime.utcnow()
            self._prune_missing_accounts()
            self._notify()

            errors = []
            for account in accounts:
                for collection in ("positions", "balances", "orders"):
                    error = self._refresh(collection, account.id)
                    if error:
                        errors.append(error)

            logger.info(
                f"Synced {len(connections)} connection(s), {len(accounts)} account(s)"
                + (f" with {len(errors)} error(s)" if errors else "")
            )
            return SyncResult(
                success=not errors,
                accounts_synced=len(accounts),
                errors=errors,
                synced_at=self.last_sync_time,
            )
        finally:
            self._sync_lock.release()
            self._notify()

    def _prune_missing_accounts(self) -> None:
        current = {account.id for account in self.accounts}
        for collection in (self.positions, self.balances, self.orders):
            for account_id in list(collection):
                if account_id not in current:
                    del collection[account_id]

    def _fetcher(self, collection: str):
        return {
            "positions": self.client.get_positions,
            "balances": self.client.get_balances,
            "orders": self.client.get_orders,
        }[collection]

    def _refresh(self, collection: str, account_id: str) -> Optional[str]:
        """Replace one keyed collection.

        Returns:
            Error message on failure, None on success
        """
        credential = self._require_credential()
        fetch = self._fetcher(collection)
        try:
            items = fetch(credential.user_id, credential.user_secret, account_id)
        except Exception as e:
            error = PartialSyncError(account_id, collection, str(e))
            logger.warning(str(error))
            self.error = error.message
            self._notify()
            return error.message

        getattr(self, collection)[account_id] = list(items)
        self._notify()
        return None

    def refresh_positions(self, account_id: str) -> bool:
        """Refresh positions for one account. Returns False on failure."""
        return self._refresh("positions", account_id) is None

    def refresh_balances(self, account_id: str) -> bool:
        """Refresh balances for one account. Returns False on failure."""
        return self._refresh("balances", account_id) is None

    def refresh_orders(self, account_id: str) -> bool:
        """Refresh orders for one account. Returns False on failure."""
        return self._refresh("orders", account_id) is None

    def clear(self) -> None:
        """Drop all held data."""
        self.connections = []
        self.accounts = []
        self.positions = {}
        self.balances = {}
        self.orders = {}
        self.last_sync_time = None
        self.error = None
        self._notify()

    def all_orders(self) -> List[BrokerOrder]:
        """Orders across all accounts."""
        return [order for orders in self.orders.values() for order in orders]
