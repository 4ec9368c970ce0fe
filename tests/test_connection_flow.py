"""Tests for the brokerage connection flow."""

import pytest
from unittest.mock import MagicMock, Mock

from trader_insights.core.brokers.credentials import CredentialStore
from trader_insights.core.brokers.errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    SessionError,
    TransportError,
    UserAlreadyExistsError,
)
from trader_insights.core.brokers.flow import ConnectionFlow, FlowState
from trader_insights.core.brokers.models import Connection, ConnectionLink, SnapTradeUser
from trader_insights.core.brokers.portal import (
    PortalClosed,
    PortalError,
    PortalMessageChannel,
    PortalSuccess,
)
from trader_insights.core.brokers.sessions import SessionRepository


@pytest.fixture
def store():
    store = MagicMock()
    store.credential = None
    return store


@pytest.fixture
def navigator():
    return Mock()


@pytest.fixture
def flow(db, mock_client, store, navigator):
    mock_client.register_user.return_value = SnapTradeUser(user_id="u1", user_secret="s1")
    mock_client.create_connection_link.return_value = ConnectionLink(redirect_uri="https://portal/x")
    return ConnectionFlow(
        client=mock_client,
        credentials=CredentialStore(db),
        sessions=SessionRepository(db),
        store=store,
        redirect_uri="https://app/callback",
        dashboard_url="/app/dashboard",
        navigator=navigator,
    )


def connection(authorization_id):
    return Connection(id=authorization_id, brokerage_authorization_id=authorization_id, status="ACTIVE")


class TestRegistration:
    """Tests for ensure_registered."""

    def test_registers_and_stores_credential(self, db, user, flow, mock_client):
        """Registering u1 stores exactly the returned pair."""
        credential = flow.ensure_registered(user.id)

        assert credential == SnapTradeUser(user_id="u1", user_secret="s1")
        assert CredentialStore(db).get(user.id) == credential
        mock_client.register_user.assert_called_once_with(user.id)

    def test_second_call_keeps_stored_secret(self, db, user, flow, mock_client):
        """Registering again must not replace the stored secret."""
        flow.ensure_registered(user.id)
        mock_client.register_user.return_value = SnapTradeUser(user_id="u1", user_secret="other")

        credential = flow.ensure_registered(user.id)

        assert credential.user_secret == "s1"
        assert CredentialStore(db).get(user.id).user_secret == "s1"
        assert mock_client.register_user.call_count == 1

    def test_retries_once_with_alternate_id(self, user, flow, mock_client):
        mock_client.register_user.side_effect = [
            UserAlreadyExistsError("User already exists", status_code=400),
            SnapTradeUser(user_id=f"{user.id}-abcd1234", user_secret="s2"),
        ]

        credential = flow.ensure_registered(user.id)

        assert credential.user_secret == "s2"
        retry_id = mock_client.register_user.call_args_list[1][0][0]
        assert retry_id.startswith(f"{user.id}-")
        assert len(retry_id) == len(user.id) + 9

    def test_second_conflict_propagates(self, user, flow, mock_client):
        mock_client.register_user.side_effect = UserAlreadyExistsError("User already exists", 400)

        with pytest.raises(UserAlreadyExistsError):
            flow.ensure_registered(user.id)
        assert mock_client.register_user.call_count == 2


class TestStart:
    """Tests for starting a connection."""

    def test_creates_pending_session_and_navigates(self, db, user, flow, navigator):
        session = flow.start(user.id)

        assert session.status == "pending"
        assert session.redirect_url == "https://portal/x"
        assert SessionRepository(db).get(session.session_id) is session
        navigator.assert_called_once_with("https://portal/x")
        assert flow.state == FlowState.AWAITING_CALLBACK
        assert flow.active_session_id == session.session_id

    def test_uses_aggregator_session_id(self, user, flow, mock_client):
        mock_client.create_connection_link.return_value = ConnectionLink(
            redirect_uri="https://portal/x", session_id="agg-session"
        )
        assert flow.start(user.id).session_id == "agg-session"

    def test_missing_redirect_uri_is_configuration_error(self, user, flow, mock_client, navigator):
        flow.redirect_uri = ""

        with pytest.raises(ConfigurationError):
            flow.start(user.id)

        mock_client.register_user.assert_not_called()
        navigator.assert_not_called()
        assert flow.state == FlowState.ERROR
        assert "SNAPTRADE_REDIRECT_URI" in flow.error

    def test_link_failure_moves_to_error(self, user, flow, mock_client, navigator):
        mock_client.create_connection_link.side_effect = TransportError("Bad gateway", 502)

        with pytest.raises(TransportError):
            flow.start(user.id)

        assert flow.state == FlowState.ERROR
        navigator.assert_not_called()


class TestResolveCallback:
    """Tests for resolving the portal redirect."""

    def test_unknown_session(self, flow, store):
        """Unknown session ids are rejected without syncing."""
        with pytest.raises(SessionError, match="Invalid or expired session"):
            flow.resolve_callback("does-not-exist")

        store.sync_all.assert_not_called()
        assert flow.state == FlowState.ERROR

    def test_completes_matching_session(self, user, flow, mock_client, store, navigator):
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection("auth-1")]

        resolved = flow.resolve_callback(session.session_id, "auth-1")

        assert resolved.status == "completed"
        assert resolved.authorization_id == "auth-1"
        store.sync_all.assert_called_once()
        navigator.assert_called_with("/app/dashboard")
        assert flow.state == FlowState.COMPLETED

    def test_falls_back_to_session_id(self, user, flow, mock_client):
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection(session.session_id)]

        assert flow.resolve_callback(session.session_id).status == "completed"

    def test_unmatched_authorization_id_falls_back_to_session_id(self, user, flow, mock_client):
        """A stale authorization id still resolves through the session id."""
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection(session.session_id)]

        resolved = flow.resolve_callback(session.session_id, "auth-stale")

        assert resolved.status == "completed"
        assert resolved.authorization_id == session.session_id

    def test_completed_session_rejects_second_resolution(self, user, flow, mock_client, store):
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection("auth-1")]
        flow.resolve_callback(session.session_id, "auth-1")

        with pytest.raises(SessionError, match="Session already processed"):
            flow.resolve_callback(session.session_id, "auth-1")

        assert store.sync_all.call_count == 1

    def test_no_matching_connection_marks_error(self, user, flow, mock_client, store):
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection("someone-else")]

        with pytest.raises(ConnectionNotFoundError):
            flow.resolve_callback(session.session_id, "auth-1")

        assert session.status == "error"
        assert session.error_message == "Connection not found"
        store.sync_all.assert_not_called()

    def test_sync_failure_does_not_undo_connection(self, user, flow, mock_client, store):
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection("auth-1")]
        store.sync_all.side_effect = TransportError("timeout")

        assert flow.resolve_callback(session.session_id, "auth-1").status == "completed"
        assert flow.state == FlowState.COMPLETED


class TestPortalEvents:
    """Tests for the message-channel variant."""

    def test_success_completes_active_session(self, user, flow):
        on_success = Mock()
        flow.on_success = on_success
        session = flow.start(user.id)
        channel = PortalMessageChannel()
        flow.attach(channel)

        channel.post({"type": "SUCCESS", "authorizationId": "auth-9"})

        assert session.status == "completed"
        assert session.authorization_id == "auth-9"
        on_success.assert_called_once_with("auth-9")
        assert channel.listener_count == 0

    def test_error_marks_session(self, user, flow):
        on_error = Mock()
        flow.on_error = on_error
        session = flow.start(user.id)
        channel = PortalMessageChannel()
        flow.attach(channel)

        channel.emit(PortalError(code="AUTH", status=401, message="Bad login"))

        assert session.status == "error"
        assert flow.error == "Bad login"
        on_error.assert_called_once_with("AUTH", 401, "Bad login")

    def test_second_success_is_rejected(self, user, flow, mock_client, store):
        """A session completed by the callback cannot be completed again."""
        on_success = Mock()
        flow.on_success = on_success
        session = flow.start(user.id)
        mock_client.list_connections.return_value = [connection("auth-1")]
        flow.resolve_callback(session.session_id, "auth-1")
        channel = PortalMessageChannel()
        flow.attach(channel)

        with pytest.raises(SessionError, match="Session already processed"):
            channel.post({"type": "SUCCESS", "authorizationId": "auth-2"})

        assert session.authorization_id == "auth-1"
        assert store.sync_all.call_count == 1
        on_success.assert_not_called()
        assert flow.state == FlowState.ERROR
        assert channel.listener_count == 0

    def test_late_error_keeps_completed_session(self, user, flow):
        on_error = Mock()
        flow.on_error = on_error
        session = flow.start(user.id)
        channel = PortalMessageChannel()
        flow.attach(channel)
        channel.post({"type": "SUCCESS", "authorizationId": "auth-9"})
        flow.attach(channel)

        with pytest.raises(SessionError, match="Session already processed"):
            channel.emit(PortalError(code="AUTH", status=401, message="Bad login"))

        assert session.status == "completed"
        assert session.error_message is None
        on_error.assert_not_called()

    def test_event_without_active_session(self, flow):
        channel = PortalMessageChannel()
        flow.attach(channel)

        with pytest.raises(SessionError, match="Invalid or expired session"):
            channel.emit(PortalSuccess(authorization_id="auth-1"))

        assert flow.state == FlowState.ERROR

    def test_closed_is_not_an_error(self, user, flow):
        session = flow.start(user.id)
        channel = PortalMessageChannel()
        flow.attach(channel)

        channel.emit(PortalClosed(modal=True))

        assert session.status == "pending"
        assert flow.error is None
        assert channel.listener_count == 0

    def test_attach_twice_registers_once(self, flow):
        channel = PortalMessageChannel()
        flow.attach(channel)
        flow.attach(channel)
        assert channel.listener_count == 1

    def test_detached_flow_ignores_late_results(self, user, flow):
        on_success = Mock()
        flow.on_success = on_success
        session = flow.start(user.id)
        flow.detach()

        flow.handle_event(PortalSuccess(authorization_id="auth-late"))

        assert session.status == "pending"
        on_success.assert_not_called()


class TestDisconnect:
    def test_deletes_user_and_credential(self, db, user, flow, mock_client, store):
        flow.ensure_registered(user.id)

        assert flow.disconnect(user.id) is True

        mock_client.delete_user.assert_called_once_with("u1")
        assert CredentialStore(db).get(user.id) is None
        store.clear.assert_called_once()

    def test_aggregator_failure_keeps_credential(self, db, user, flow, mock_client):
        flow.ensure_registered(user.id)
        mock_client.delete_user.side_effect = TransportError("nope", 500)

        with pytest.raises(TransportError):
            flow.disconnect(user.id)

        assert CredentialStore(db).get(user.id) is not None
