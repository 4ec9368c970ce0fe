"""Tests for WebullClient."""

import json

import pytest
import requests
from unittest.mock import MagicMock, Mock

from trader_insights.core.brokers.errors import NotAuthenticatedError, TransportError
from trader_insights.core.brokers.webull_client import (
    WebullClient,
    WebullCredentials,
    hash_password,
)


def make_response(status_code=200, data=None):
    response = Mock()
    response.status_code = status_code
    response.content = b"" if data is None else json.dumps(data).encode()
    response.json.return_value = data
    response.text = json.dumps(data)
    return response


LOGIN_RESPONSE = {
    "accessToken": "tok-1",
    "refreshToken": "ref-1",
    "tokenExpireTime": "2030-01-01T00:00:00Z",
    "uuid": "wb-uuid",
}


@pytest.fixture
def session():
    session = MagicMock()
    session.headers = {}
    return session


@pytest.fixture
def client(session):
    return WebullClient(base_url="https://webull.test/api/", device_id="dev-1", session=session)


class TestWebullClient:
    """Tests for WebullClient."""

    def test_fetch_before_login(self, client, session):
        """Trade fetches require a login."""
        with pytest.raises(NotAuthenticatedError, match="Please login first"):
            client.fetch_trades()
        session.request.assert_not_called()

    def test_login_sends_hashed_password(self, client, session):
        session.request.return_value = make_response(200, LOGIN_RESPONSE)

        auth = client.login(WebullCredentials(username="me@example.com", password="hunter2"))

        assert client.is_authenticated
        assert auth.access_token == "tok-1"
        assert auth.refresh_token == "ref-1"
        method, url = session.request.call_args[0]
        body = session.request.call_args[1]["json"]
        assert method == "POST"
        assert url == "https://webull.test/api/passport/login/v5/account"
        assert body["pwd"] == hash_password("hunter2")
        assert body["pwd"] != "hunter2"
        assert body["accountType"] == 2
        assert body["deviceId"] == "dev-1"
        assert session.headers["did"] == "dev-1"

    def test_login_with_mfa_code(self, client, session):
        session.request.return_value = make_response(200, LOGIN_RESPONSE)

        client.login(WebullCredentials(username="5551234", password="pw", mfa_code="123456"))

        body = session.request.call_args[1]["json"]
        assert body["accountType"] == 1
        assert body["extInfo"]["verificationCode"] == "123456"

    def test_login_rejected(self, client, session):
        session.request.return_value = make_response(403, {"msg": "Wrong password"})

        with pytest.raises(TransportError) as exc_info:
            client.login(WebullCredentials(username="me", password="bad"))

        assert exc_info.value.message == "Wrong password"
        assert not client.is_authenticated

    def test_login_requires_credentials(self, client):
        with pytest.raises(ValueError):
            client.login(WebullCredentials(username="", password=""))

    def test_network_failure(self, client, session):
        session.request.side_effect = requests.Timeout("slow")

        with pytest.raises(TransportError):
            client.login(WebullCredentials(username="me", password="pw"))

    def test_fetch_trades_normalized(self, client, session):
        session.request.side_effect = [
            make_response(200, LOGIN_RESPONSE),
            make_response(200, {"data": [{"secAccountId": 998877}]}),
            make_response(
                200,
                [
                    {
                        "orderId": "w-1",
                        "ticker": {"symbol": "TSLA"},
                        "action": "BUY",
                        "status": "Filled",
                        "totalQuantity": 3,
                        "filledQuantity": 3,
                        "avgFilledPrice": "201.5",
                        "orderType": "LMT",
                        "timeInForce": "GTC",
                        "filledTime": 1706800000000,
                    },
                    {"orderId": "w-2"},
                ],
            ),
        ]
        client.login(WebullCredentials(username="me", password="pw"))

        orders = client.fetch_trades(status="Filled")

        assert len(orders) == 1
        order = orders[0]
        assert order.order_id == "w-1"
        assert order.symbol == "TSLA"
        assert order.account_id == "998877"
        assert order.filled_price == 201.5
        assert order.is_filled
        params = session.request.call_args[1]["params"]
        assert params == {"secAccountId": "998877", "status": "Filled"}
        assert session.request.call_args[1]["headers"]["access_token"] == "tok-1"

    def test_get_account(self, client, session):
        session.request.side_effect = [
            make_response(200, LOGIN_RESPONSE),
            make_response(200, {"data": [{"secAccountId": "acc-9"}]}),
            make_response(200, {"netLiquidation": "2500.75", "currency": "usd"}),
        ]
        client.login(WebullCredentials(username="me", password="pw"))

        account = client.get_account()

        assert account.id == "acc-9"
        assert account.institution_name == "Webull"
        assert account.balance == 2500.75
        assert account.currency == "USD"

    def test_logout_clears_session(self, client, session):
        session.request.side_effect = [make_response(200, LOGIN_RESPONSE), make_response(200, {})]
        client.login(WebullCredentials(username="me", password="pw"))

        client.logout()

        assert not client.is_authenticated
        assert session.request.call_args[0][1].endswith("/passport/login/logout")
        with pytest.raises(NotAuthenticatedError):
            client.get_positions()

    def test_logout_when_logged_out_is_noop(self, client, session):
        client.logout()
        session.request.assert_not_called()

    def test_refresh_replaces_token(self, client, session):
        session.request.return_value = make_response(
            200, {"accessToken": "tok-2", "refreshToken": "ref-2"}
        )

        auth = client.refresh("ref-1")

        assert auth.access_token == "tok-2"
        assert client.auth is auth
        assert session.request.call_args[1]["params"] == {"refreshToken": "ref-1"}
