"""Shared test fixtures."""

import pytest
from unittest.mock import MagicMock
from sqlalchemy.orm import sessionmaker

from trader_insights.core.brokers.models import Account, SnapTradeUser
from trader_insights.db.database import create_db_engine, init_db
from trader_insights.db.models import User


@pytest.fixture
def db():
    """In-memory SQLite session with all tables created."""
    engine = create_db_engine("sqlite://")
    init_db(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def user(db):
    user = User(email="trader@example.com")
    db.add(user)
    db.flush()
    return user


@pytest.fixture
def credential():
    return SnapTradeUser(user_id="local-1", user_secret="secret-1")


@pytest.fixture
def make_account():
    """Factory for Account models."""

    def _make(account_id: str) -> Account:
        return Account(
            id=account_id,
            name=f"Account {account_id}",
            type="margin",
            number=f"0000{account_id}",
            institution_name="Test Brokerage",
        )

    return _make


@pytest.fixture
def mock_client():
    """SnapTrade client double with an empty aggregator."""
    client = MagicMock()
    client.signer.client_id = "client-id"
    client.signer.consumer_key = "consumer-key"
    client.list_connections.return_value = []
    client.get_accounts.return_value = []
    client.get_positions.return_value = []
    client.get_balances.return_value = []
    client.get_orders.return_value = []
    return client
