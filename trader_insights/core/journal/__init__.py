"""Trading journal records."""

from .repository import TradeRepository, order_notes, trade_side

__all__ = [
    "TradeRepository",
    "order_notes",
    "trade_side",
]
