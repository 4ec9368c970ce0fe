"""Broker trade sync service.

Pulls broker data through a ``BrokerDataStore`` and reconciles filled
orders into the journal's ``trades`` table.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from trader_insights.core.brokers.credentials import CredentialStore
from trader_insights.core.brokers.errors import NotRegisteredError
from trader_insights.core.brokers.models import BrokerOrder, BrokerType, ReconcileResult, SyncResult
from trader_insights.core.brokers.snaptrade_client import SnapTradeClient
from trader_insights.core.brokers.store import BrokerDataStore
from trader_insights.core.brokers.webull_client import WebullClient
from trader_insights.core.journal.repository import TradeRepository
from trader_insights.db.models import User

logger = logging.getLogger(__name__)


class BrokerSyncService:
    """Service for syncing broker orders into journal trades."""

    def __init__(
        self,
        db: Session,
        client_factory: Callable[[], SnapTradeClient] = SnapTradeClient.from_settings,
    ):
        self.db = db
        self.credentials = CredentialStore(db)
        self.repo = TradeRepository(db)
        self._client_factory = client_factory
        self._client: Optional[SnapTradeClient] = None

    @property
    def client(self) -> SnapTradeClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def store_for(self, user: User) -> BrokerDataStore:
        """Build a data store bound to the user's stored credential.

        Raises:
            NotRegisteredError: User has no broker credential
        """
        credential = self.credentials.get(user.id)
        if credential is None:
            raise NotRegisteredError(f"User {user.id} has not connected a brokerage")
        return BrokerDataStore(self.client, credential)

    def sync_user(
        self,
        user: User,
        store: Optional[BrokerDataStore] = None,
    ) -> tuple[SyncResult, ReconcileResult]:
        """Sync a user's SnapTrade data and reconcile filled orders.

        Args:
            user: User to sync
            store: Existing store to refresh (a new one is built if omitted)

        Returns:
            (SyncResult, ReconcileResult)
        """
        store = store or self.store_for(user)
        sync_result = store.sync_all()
        reconcile_result = self.reconcile_orders(
            user_id=user.id,
            broker=BrokerType.SNAPTRADE.value,
            orders=store.all_orders(),
        )
        if sync_result.errors:
            reconcile_result.errors.extend(sync_result.errors)
        return sync_result, reconcile_result

    def reconcile_orders(
        self,
        user_id: str,
        broker: str,
        orders: List[BrokerOrder],
    ) -> ReconcileResult:
        """Insert new filled orders, update changed ones, skip the rest.

        Args:
            user_id: Local user ID
            broker: Broker the orders came from
            orders: Normalized broker orders

        Returns:
            ReconcileResult
        """
        created = 0
        updated = 0
        skipped = 0
        errors = []

        for order in orders:
            try:
                if not order.is_filled:
                    skipped += 1
                    continue

                existing = self.repo.get_by_broker_order(user_id, broker, order.order_id)
                if existing:
                    if self.repo.update_from_order(existing, order):
                        updated += 1
                    else:
                        skipped += 1
                else:
                    if not (order.filled_price or order.price):
                        logger.warning(f"Skipping {order.symbol} order {order.order_id}: no fill price")
                        skipped += 1
                        continue
                    self.repo.create_from_order(user_id, broker, order)
                    created += 1

            except Exception as e:
                errors.append(f"{order.symbol} ({order.order_id}): {str(e)}")

        logger.info(
            f"Reconciled {len(orders)} {broker} order(s) for user {user_id}: "
            f"{created} created, {updated} updated, {skipped} skipped"
        )
        return ReconcileResult(
            fetched=len(orders),
            created=created,
            updated=updated,
            skipped=skipped,
            errors=errors,
        )

    def import_webull(self, user: User, client: WebullClient, **filters) -> ReconcileResult:
        """Import trades from a logged-in Webull client."""
        orders = client.fetch_trades(**filters)
        return self.reconcile_orders(user_id=user.id, broker=BrokerType.WEBULL.value, orders=orders)

    def sync_all_users(self) -> Dict[str, ReconcileResult]:
        """Sync every user holding a broker credential.

        Per-user failures are logged and recorded; they never stop the cycle.
        """
        results = {}
        for user_id in self.credentials.user_ids():
            user = self.db.query(User).filter_by(id=user_id).first()
            if user is None or not user.is_active:
                continue
            try:
                _, results[user_id] = self.sync_user(user)
            except Exception as e:
                logger.error(f"Broker sync failed for user {user_id}: {e}")
                results[user_id] = ReconcileResult(
                    fetched=0, created=0, updated=0, skipped=0, errors=[str(e)]
                )
        return results


def get_broker_sync_service(db: Session) -> BrokerSyncService:
    """Factory function for broker sync service."""
    return BrokerSyncService(db)
