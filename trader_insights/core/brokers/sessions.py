"""Connection session repository."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from trader_insights.core.brokers.models import SessionStatus
from trader_insights.db.models import ConnectionSession

logger = logging.getLogger(__name__)


class SessionRepository:
    """Stores connection attempts so a later callback can find them by id."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        session_id: str,
        user_id: str,
        external_user_id: str,
        external_user_secret: str,
        redirect_url: str,
        broker_id: Optional[str] = None,
    ) -> ConnectionSession:
        """Create a pending session."""
        session = ConnectionSession(
            session_id=session_id,
            user_id=user_id,
            external_user_id=external_user_id,
            external_user_secret=external_user_secret,
            broker_id=broker_id,
            redirect_url=redirect_url,
            status=SessionStatus.PENDING.value,
        )
        self.db.add(session)
        self.db.flush()
        return session

    def get(self, session_id: str) -> Optional[ConnectionSession]:
        """Get a session by id."""
        if not session_id:
            return None
        return self.db.query(ConnectionSession).filter_by(session_id=session_id).first()

    def latest_pending(self, user_id: str) -> Optional[ConnectionSession]:
        """Most recent pending session for a user."""
        return (
            self.db.query(ConnectionSession)
            .filter_by(user_id=user_id, status=SessionStatus.PENDING.value)
            .order_by(ConnectionSession.created_at.desc())
            .first()
        )

    def list_for_user(self, user_id: str) -> List[ConnectionSession]:
        return (
            self.db.query(ConnectionSession)
            .filter_by(user_id=user_id)
            .order_by(ConnectionSession.created_at.desc())
            .all()
        )

    def mark_completed(self, session: ConnectionSession, authorization_id: str) -> ConnectionSession:
        session.status = SessionStatus.COMPLETED.value
        session.authorization_id = authorization_id
        session.error_message = None
        session.resolved_at = datetime.utcnow()
        self.db.flush()
        logger.info(f"Connection session {session.session_id} completed ({authorization_id})")
        return session

    def mark_error(self, session: ConnectionSession, message: str) -> ConnectionSession:
        session.status = SessionStatus.ERROR.value
        session.error_message = message
        session.resolved_at = datetime.utcnow()
        self.db.flush()
        logger.warning(f"Connection session {session.session_id} failed: {message}")
        return session
