"""Credential store for aggregator user identities."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from trader_insights.core.brokers.errors import CredentialExistsError
from trader_insights.core.brokers.models import SnapTradeUser
from trader_insights.db.models import BrokerCredential

logger = logging.getLogger(__name__)


class CredentialStore:
    """Repository for the one BrokerCredential each local user may hold."""

    def __init__(self, db: Session):
        """Initialize store with database session."""
        self.db = db

    def get(self, user_id: str) -> Optional[SnapTradeUser]:
        """Get the stored aggregator identity for a local user."""
        row = self.db.query(BrokerCredential).filter_by(user_id=user_id).first()
        if row is None:
            return None
        return SnapTradeUser(user_id=row.external_user_id, user_secret=row.external_user_secret)

    def exists(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def save(self, user_id: str, credential: SnapTradeUser) -> SnapTradeUser:
        """Persist a freshly registered identity.

        Raises:
            CredentialExistsError: A credential is already stored for this user.
                Call delete() (disconnect) first.
            ValueError: The credential is incomplete
        """
        if not credential.user_id or not credential.user_secret:
            raise ValueError("Credential requires both user id and user secret")

        if self.exists(user_id):
            raise CredentialExistsError(
                f"User {user_id} already has a broker credential; disconnect before re-registering"
            )

        self.db.add(
            BrokerCredential(
                user_id=user_id,
                external_user_id=credential.user_id,
                external_user_secret=credential.user_secret,
            )
        )
        self.db.flush()
        logger.info(f"Stored broker credential for user {user_id}")
        return credential

    def delete(self, user_id: str) -> bool:
        """Delete the credential for a user.

        Returns:
            True if a credential was removed
        """
        row = self.db.query(BrokerCredential).filter_by(user_id=user_id).first()
        if row is None:
            return False
        self.db.delete(row)
        self.db.flush()
        logger.info(f"Deleted broker credential for user {user_id}")
        return True

    def user_ids(self) -> List[str]:
        """Local user ids that hold a credential."""
        return [row.user_id for row in self.db.query(BrokerCredential.user_id).all()]
