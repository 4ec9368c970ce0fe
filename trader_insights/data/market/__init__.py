"""Market data feeds (last trades, streaming quotes)."""

from .models import Quote
from .provider import QuoteProvider
from .stream import QuoteStream, SocketHandlers

__all__ = ["Quote", "QuoteProvider", "QuoteStream", "SocketHandlers"]
