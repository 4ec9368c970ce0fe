"""SQLAlchemy ORM models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    String,
    Float,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get current UTC timestamp."""
    return datetime.utcnow()


class User(Base):
    """Local application user."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    broker_credential = relationship(
        "BrokerCredential",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    trades = relationship("JournalTrade", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class BrokerCredential(Base):
    """Aggregator user identity registered for a local user.

    Written once per registration, removed on disconnect.
    """

    __tablename__ = "broker_credentials"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    external_user_id = Column(String(255), nullable=False)
    external_user_secret = Column(String(255), nullable=False)  # TODO: encrypt at rest
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="broker_credential")

    def __repr__(self) -> str:
        return f"<BrokerCredential(user_id={self.user_id}, external_user_id={self.external_user_id})>"


class ConnectionSession(Base):
    """One in-flight brokerage connection attempt."""

    __tablename__ = "connection_sessions"

    session_id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    external_user_id = Column(String(255), nullable=False)
    external_user_secret = Column(String(255), nullable=False)
    broker_id = Column(String(100), nullable=True)
    redirect_url = Column(Text, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, completed, error
    authorization_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ConnectionSession(session_id={self.session_id}, status={self.status})>"


class JournalTrade(Base):
    """Trade record in the journal, possibly imported from a broker."""

    __tablename__ = "trades"
    __table_args__ = (
        UniqueConstraint("user_id", "broker", "broker_order_id", name="uq_trade_broker_order"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    broker = Column(String(50), nullable=True)  # snaptrade, webull, NULL for manual entries
    broker_order_id = Column(String(255), nullable=True)
    account_id = Column(String(255), nullable=True)
    symbol = Column(String(32), nullable=False)
    side = Column(String(10), nullable=False)  # Long, Short
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    total = Column(Float, nullable=False)
    fees = Column(Float, default=0.0, nullable=False)
    status = Column(String(20), default="closed", nullable=False)
    executed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="trades")

    def __repr__(self) -> str:
        return f"<JournalTrade(id={self.id}, symbol={self.symbol}, side={self.side}, qty={self.quantity})>"
