"""Tests for BrokerSyncService and journal reconciliation."""

from datetime import datetime

import pytest
from unittest.mock import MagicMock

from trader_insights.core.brokers.credentials import CredentialStore
from trader_insights.core.brokers.errors import NotRegisteredError, TransportError
from trader_insights.core.brokers.models import BrokerOrder, SnapTradeUser
from trader_insights.core.brokers.sync import BrokerSyncService
from trader_insights.core.journal.repository import TradeRepository, order_notes, trade_side
from trader_insights.db.models import User


def make_order(order_id="o-1", status="EXECUTED", **overrides):
    fields = dict(
        order_id=order_id,
        account_id="A",
        symbol="AAPL",
        action="BUY",
        status=status,
        quantity=10,
        price=150.0,
        executed_at=datetime(2024, 2, 1, 15, 30),
    )
    fields.update(overrides)
    return BrokerOrder(**fields)


@pytest.fixture
def service(db, mock_client):
    return BrokerSyncService(db, client_factory=lambda: mock_client)


class TestReconcileOrders:
    """Tests for reconcile_orders."""

    def test_creates_filled_orders(self, db, user, service):
        result = service.reconcile_orders(user.id, "snaptrade", [make_order()])

        assert result.created == 1
        assert result.success
        trade = TradeRepository(db).get_by_broker_order(user.id, "snaptrade", "o-1")
        assert trade.side == "Long"
        assert trade.quantity == 10
        assert trade.total == 1500.0
        assert trade.status == "closed"
        assert "Snaptrade Order ID: o-1" in trade.notes

    def test_skips_unfilled_and_unpriced(self, user, service):
        result = service.reconcile_orders(
            user.id,
            "snaptrade",
            [
                make_order("o-1", status="PENDING"),
                make_order("o-2", price=None),
            ],
        )

        assert result.created == 0
        assert result.skipped == 2

    def test_second_run_updates_changed_orders_only(self, db, user, service):
        service.reconcile_orders(user.id, "snaptrade", [make_order("o-1"), make_order("o-2")])

        result = service.reconcile_orders(
            user.id,
            "snaptrade",
            [make_order("o-1"), make_order("o-2", filled_price=151.0, commission=1.0)],
        )

        assert result.created == 0
        assert result.updated == 1
        assert result.skipped == 1
        trade = TradeRepository(db).get_by_broker_order(user.id, "snaptrade", "o-2")
        assert trade.price == 151.0
        assert trade.fees == 1.0

    def test_same_order_id_per_broker(self, db, user, service):
        service.reconcile_orders(user.id, "snaptrade", [make_order("o-1")])
        result = service.reconcile_orders(user.id, "webull", [make_order("o-1", action="SELL")])

        assert result.created == 1
        assert len(TradeRepository(db).list(user.id)) == 2
        assert TradeRepository(db).list(user.id, broker="webull")[0].side == "Short"


class TestSyncUser:
    def test_requires_credential(self, user, service):
        with pytest.raises(NotRegisteredError):
            service.sync_user(user)

    def test_syncs_store_and_reconciles(self, db, user, service, mock_client, make_account):
        CredentialStore(db).save(user.id, SnapTradeUser(user_id="u1", user_secret="s1"))
        mock_client.get_accounts.return_value = [make_account("A")]
        mock_client.get_orders.return_value = [make_order("o-1"), make_order("o-2", status="CANCELED")]

        sync_result, reconcile_result = service.sync_user(user)

        assert sync_result.accounts_synced == 1
        assert reconcile_result.fetched == 2
        assert reconcile_result.created == 1
        mock_client.get_orders.assert_called_once_with("u1", "s1", "A")

    def test_partial_sync_errors_reported(self, db, user, service, mock_client, make_account):
        CredentialStore(db).save(user.id, SnapTradeUser(user_id="u1", user_secret="s1"))
        mock_client.get_accounts.return_value = [make_account("A")]
        mock_client.get_positions.side_effect = TransportError("boom", 500)

        _, reconcile_result = service.sync_user(user)

        assert not reconcile_result.success
        assert "positions" in reconcile_result.errors[0]


class TestImportWebull:
    def test_imports_fetched_trades(self, db, user, service):
        webull = MagicMock()
        webull.fetch_trades.return_value = [
            make_order("w-1", status="FILLED", action="SELL", order_type="LMT", time_in_force="DAY")
        ]

        result = service.import_webull(user, webull, status="Filled")

        assert result.created == 1
        webull.fetch_trades.assert_called_once_with(status="Filled")
        trade = TradeRepository(db).list(user.id, broker="webull")[0]
        assert trade.side == "Short"
        assert trade.notes == "Webull Order ID: w-1\nOrder Type: LMT\nTime In Force: DAY"


class TestSyncAllUsers:
    def test_one_failing_user_does_not_stop_others(self, db, user, service, mock_client, make_account):
        other = User(email="second@example.com")
        db.add(other)
        db.flush()
        credentials = CredentialStore(db)
        credentials.save(user.id, SnapTradeUser(user_id="u1", user_secret="s1"))
        credentials.save(other.id, SnapTradeUser(user_id="u2", user_secret="s2"))

        def get_accounts(user_id, user_secret):
            if user_id == "u1":
                raise TransportError("Unauthorized", 401)
            return [make_account("B")]

        mock_client.get_accounts.side_effect = get_accounts
        mock_client.get_orders.return_value = [make_order("o-9", account_id="B")]

        results = service.sync_all_users()

        assert not results[user.id].success
        assert results[other.id].created == 1

    def test_inactive_users_skipped(self, db, user, service, mock_client):
        CredentialStore(db).save(user.id, SnapTradeUser(user_id="u1", user_secret="s1"))
        user.is_active = False
        db.flush()

        assert service.sync_all_users() == {}
        mock_client.list_connections.assert_not_called()


class TestJournalHelpers:
    @pytest.mark.parametrize("action,side", [("BUY", "Long"), ("buy", "Long"), ("SELL", "Short")])
    def test_trade_side(self, action, side):
        assert trade_side(action) == side

    def test_order_notes_minimal(self):
        assert order_notes("snaptrade", make_order("o-7")) == "Snaptrade Order ID: o-7"
