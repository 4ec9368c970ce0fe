"""Journal trade repository for CRUD operations."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from trader_insights.core.brokers.models import BrokerOrder
from trader_insights.db.models import JournalTrade


def trade_side(action: str) -> str:
    """Map a broker order action to a journal side."""
    return "Long" if action.upper() == "BUY" else "Short"


def order_notes(broker: str, order: BrokerOrder) -> str:
    lines = [f"{broker.title()} Order ID: {order.order_id}"]
    if order.order_type:
        lines.append(f"Order Type: {order.order_type}")
    if order.time_in_force:
        lines.append(f"Time In Force: {order.time_in_force}")
    return "\n".join(lines)


class TradeRepository:
    """Repository for JournalTrade CRUD operations."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def get_by_broker_order(
        self,
        user_id: str,
        broker: str,
        broker_order_id: str,
    ) -> Optional[JournalTrade]:
        """Get the trade imported from a specific broker order."""
        return (
            self.db.query(JournalTrade)
            .filter_by(user_id=user_id, broker=broker, broker_order_id=broker_order_id)
            .first()
        )

    def list(
        self,
        user_id: str,
        broker: Optional[str] = None,
        symbol: Optional[str] = None,
    ) -> List[JournalTrade]:
        """List trades for a user, newest first.

        Args:
            user_id: User ID
            broker: Only trades imported from this broker
            symbol: Only trades for this ticker
        """
        query = self.db.query(JournalTrade).filter_by(user_id=user_id)
        if broker:
            query = query.filter_by(broker=broker)
        if symbol:
            query = query.filter_by(symbol=symbol.upper())
        return query.order_by(JournalTrade.executed_at.desc()).all()

    def create_from_order(self, user_id: str, broker: str, order: BrokerOrder) -> JournalTrade:
        """Create a trade from a filled broker order."""
        quantity = order.filled_quantity or order.quantity
        price = order.filled_price or order.price or 0.0
        trade = JournalTrade(
            user_id=user_id,
            broker=broker,
            broker_order_id=order.order_id,
            account_id=order.account_id,
            symbol=order.symbol.upper(),
            side=trade_side(order.action),
            quantity=quantity,
            price=price,
            total=quantity * price,
            fees=order.commission or 0.0,
            status="closed",
            executed_at=order.executed_at,
            notes=order_notes(broker, order),
        )
        self.db.add(trade)
        self.db.flush()
        return trade

    def update_from_order(self, trade: JournalTrade, order: BrokerOrder) -> bool:
        """Apply changed order fields to an existing trade.

        Returns:
            True if anything changed
        """
        quantity = order.filled_quantity or order.quantity
        price = order.filled_price or order.price or trade.price
        changes = {
            "quantity": quantity,
            "price": price,
            "total": quantity * price,
            "fees": order.commission or 0.0,
            "executed_at": order.executed_at or trade.executed_at,
        }
        changed = False
        for field, value in changes.items():
            if getattr(trade, field) != value:
                setattr(trade, field, value)
                changed = True

        if changed:
            trade.updated_at = datetime.utcnow()
            self.db.flush()
        return changed

