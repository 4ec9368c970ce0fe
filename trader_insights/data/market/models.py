"""Market data Pydantic models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Quote(BaseModel):
    """Last trade for a symbol."""

    symbol: str
    price: float
    size: Optional[float] = None
    exchange: Optional[int] = None
    traded_at: Optional[datetime] = None
    fetched_at: datetime

    class Config:
        from_attributes = True
