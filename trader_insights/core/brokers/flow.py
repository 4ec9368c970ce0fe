"""Brokerage connection flow.

Drives one connection attempt end to end:

    INIT -> LINKING -> AWAITING_CALLBACK -> RESOLVING -> COMPLETED
                                                      \\-> ERROR

The portal outcome arrives either as an HTTP callback carrying the session
id (``resolve_callback``) or as a posted portal message delivered through a
``PortalMessageChannel`` (``attach`` / ``handle_event``).
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Callable, Optional

from trader_insights.core.brokers.credentials import CredentialStore
from trader_insights.core.brokers.errors import (
    BrokerError,
    ConfigurationError,
    ConnectionNotFoundError,
    SessionError,
    UserAlreadyExistsError,
)
from trader_insights.core.brokers.models import SessionStatus, SnapTradeUser
from trader_insights.core.brokers.portal import (
    PortalClosed,
    PortalError,
    PortalEvent,
    PortalMessageChannel,
    PortalSuccess,
)
from trader_insights.core.brokers.sessions import SessionRepository
from trader_insights.core.brokers.snaptrade_client import SnapTradeClient
from trader_insights.core.brokers.store import BrokerDataStore
from trader_insights.db.models import ConnectionSession

logger = logging.getLogger(__name__)

Navigator = Callable[[str], None]


class FlowState(str, Enum):
    """Connection flow states."""

    INIT = "init"
    LINKING = "linking"
    AWAITING_CALLBACK = "awaiting_callback"
    RESOLVING = "resolving"
    COMPLETED = "completed"
    ERROR = "error"


def _log_navigation(url: str) -> None:
    logger.info(f"Navigate to {url}")


def alternate_user_id(user_id: str) -> str:
    """Alternate aggregator id used when the plain id is already taken."""
    return f"{user_id}-{uuid.uuid4().hex[:8]}"


class ConnectionFlow:
    """Controller for a single user's brokerage connection attempt."""

    def __init__(
        self,
        client: SnapTradeClient,
        credentials: CredentialStore,
        sessions: SessionRepository,
        store: BrokerDataStore,
        redirect_uri: str,
        dashboard_url: str = "/app/dashboard",
        navigator: Optional[Navigator] = None,
        on_success: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str, int, str], None]] = None,
    ):
        """Initialize the flow.

        Args:
            client: Aggregator client
            credentials: Credential store for the local user
            sessions: Session repository
            store: Data sync store refreshed after a completed connection
            redirect_uri: Where the portal sends the user when done
            dashboard_url: Where the user lands after completion
            navigator: Called with each URL the user should be sent to
            on_success: Called with the authorization id of a portal success
            on_error: Called with (code, status, message) of a portal error
        """
        self.client = client
        self.credentials = credentials
        self.sessions = sessions
        self.store = store
        self.redirect_uri = redirect_uri
        self.dashboard_url = dashboard_url
        self.navigator = navigator or _log_navigation
        self.on_success = on_success
        self.on_error = on_error

        self.state = FlowState.INIT
        self.error: Optional[str] = None
        self.active_session_id: Optional[str] = None
        self.alive = True
        self._channel: Optional[PortalMessageChannel] = None

    def _fail(self, error: Exception) -> None:
        self.state = FlowState.ERROR
        self.error = str(error)
        logger.error(f"Connection flow failed: {error}")

    def _check_configuration(self) -> None:
        signer = self.client.signer
        missing = []
        if not signer.client_id:
            missing.append("SNAPTRADE_CLIENT_ID")
        if not signer.consumer_key:
            missing.append("SNAPTRADE_CONSUMER_KEY")
        if not self.redirect_uri:
            missing.append("SNAPTRADE_REDIRECT_URI")
        if missing:
            raise ConfigurationError(f"SnapTrade not configured - set {', '.join(missing)}")

    def ensure_registered(self, user_id: str) -> SnapTradeUser:
        """Return the user's aggregator identity, registering it if needed.

        A stored credential is returned as-is without calling the aggregator.
        If the aggregator already knows ``user_id``, registration is retried
        once with an alternate id.
        """
        existing = self.credentials.get(user_id)
        if existing is not None:
            self.store.credential = existing
            return existing

        try:
            credential = self.client.register_user(user_id)
        except UserAlreadyExistsError:
            retry_id = alternate_user_id(user_id)
            logger.warning(f"SnapTrade user {user_id} already exists, retrying as {retry_id}")
            credential = self.client.register_user(retry_id)

        self.credentials.save(user_id, credential)
        self.store.credential = credential
        return credential

    def start(self, user_id: str, broker_id: Optional[str] = None) -> ConnectionSession:
        """Begin a connection: register, create the portal link, navigate.

        Raises:
            ConfigurationError: Client id, consumer key or redirect URI missing
            TransportError: Aggregator call failed
        """
        self.state = FlowState.LINKING
        self.error = None
        self.alive = True
        try:
            self._check_configuration()
            credential = self.ensure_registered(user_id)
            link = self.client.create_connection_link(
                credential.user_id,
                credential.user_secret,
                broker_id=broker_id,
                redirect_uri=self.redirect_uri,
            )
            session = self.sessions.create(
                session_id=link.session_id or str(uuid.uuid4()),
                user_id=user_id,
                external_user_id=credential.user_id,
                external_user_secret=credential.user_secret,
                redirect_url=link.redirect_uri,
                broker_id=broker_id,
            )
        except (BrokerError, ValueError) as e:
            self._fail(e)
            raise

        self.active_session_id = session.session_id
        self.state = FlowState.AWAITING_CALLBACK
        logger.info(f"Connection session {session.session_id} started for user {user_id}")
        self.navigator(link.redirect_uri)
        return session

    def _pending_session(self, session_id: str) -> ConnectionSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionError("Invalid or expired session")
        if session.status != SessionStatus.PENDING.value:
            raise SessionError("Session already processed")
        return session

    def _sync_after_connect(self, session: ConnectionSession) -> None:
        if self.store.credential is None:
            self.store.credential = SnapTradeUser(
                user_id=session.external_user_id,
                user_secret=session.external_user_secret,
            )
        try:
            self.store.sync_all()
        except BrokerError as e:
            # The connection itself succeeded; the store keeps the error
            logger.warning(f"Initial sync after connection failed: {e}")

    def resolve_callback(
        self,
        session_id: str,
        authorization_id: Optional[str] = None,
    ) -> ConnectionSession:
        """Resolve a portal redirect for a pending session.

        Raises:
            SessionError: Unknown or already processed session
            ConnectionNotFoundError: Aggregator has no matching authorization
        """
        self.state = FlowState.RESOLVING
        try:
            session = self._pending_session(session_id)
            connections = self.client.list_connections(
                session.external_user_id,
                session.external_user_secret,
            )
        except BrokerError as e:
            self._fail(e)
            raise

        # Prefer the reported authorization id, then the session id
        match = None
        for wanted in (authorization_id, session_id):
            if not wanted:
                continue
            match = next(
                (c for c in connections if c.brokerage_authorization_id == wanted),
                None,
            )
            if match is not None:
                break
        if match is None:
            error = ConnectionNotFoundError("Connection not found")
            self.sessions.mark_error(session, error.message)
            self._fail(error)
            raise error

        self.sessions.mark_completed(session, match.brokerage_authorization_id)
        self._sync_after_connect(session)
        self.state = FlowState.COMPLETED
        self.navigator(self.dashboard_url)
        return session

    def attach(self, channel: PortalMessageChannel) -> None:
        """Listen for portal messages on a channel. Attaching twice is a no-op."""
        if self._channel is channel:
            return
        if self._channel is not None:
            self._channel.remove_listener(self.handle_event)
        self._channel = channel
        channel.add_listener(self.handle_event)

    def detach(self) -> None:
        """Stop listening and ignore any result that arrives later."""
        self.alive = False
        self._close_portal()

    def _close_portal(self) -> None:
        if self._channel is not None:
            self._channel.remove_listener(self.handle_event)
            self._channel = None

    def handle_event(self, event: PortalEvent) -> None:
        """Apply a portal message to the active session.

        Raises:
            SessionError: Success or error reported for a session that is
                unknown or already resolved
        """
        if not self.alive:
            logger.debug(f"Ignoring portal event after detach: {event}")
            return

        if isinstance(event, (PortalSuccess, PortalError)):
            try:
                session = self._pending_session(self.active_session_id or "")
            except SessionError as e:
                self._fail(e)
                self._close_portal()
                raise

        if isinstance(event, PortalSuccess):
            self.sessions.mark_completed(session, event.authorization_id)
            self._sync_after_connect(session)
            self.state = FlowState.COMPLETED
            self._close_portal()
            if self.on_success:
                self.on_success(event.authorization_id)
        elif isinstance(event, PortalError):
            self.sessions.mark_error(session, event.message)
            self.state = FlowState.ERROR
            self.error = event.message
            self._close_portal()
            if self.on_error:
                self.on_error(event.code, event.status, event.message)
        elif isinstance(event, PortalClosed):
            logger.info("Connection portal closed by user")
            self._close_portal()

    def disconnect(self, user_id: str) -> bool:
        """Delete the aggregator user, the local credential and held data.

        Returns:
            True if a credential was removed
        """
        credential = self.credentials.get(user_id)
        if credential is None:
            self.store.clear()
            return False

        try:
            self.client.delete_user(credential.user_id)
        except BrokerError as e:
            logger.error(f"Failed to delete SnapTrade user {credential.user_id}: {e}")
            raise

        removed = self.credentials.delete(user_id)
        self.store.credential = None
        self.store.clear()
        self.state = FlowState.INIT
        self.active_session_id = None
        return removed
