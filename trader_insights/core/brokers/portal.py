"""Connection portal events.

When the aggregator portal runs embedded (iframe or modal) it reports the
outcome by posting a message ``{"type": "SUCCESS" | "ERROR" | "CLOSED" |
"CLOSE_MODAL", ...}``. Raw messages are parsed into a small tagged union
and delivered through an explicit channel, so the connection flow can be
driven without a browser.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortalSuccess:
    authorization_id: str


@dataclass(frozen=True)
class PortalError:
    code: str
    status: int
    message: str


@dataclass(frozen=True)
class PortalClosed:
    modal: bool = False


PortalEvent = Union[PortalSuccess, PortalError, PortalClosed]
PortalListener = Callable[[PortalEvent], None]


def parse_portal_message(data: Any) -> Optional[PortalEvent]:
    """Turn a posted portal message into a PortalEvent.

    Returns None for messages that are not from the portal.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError:
            return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("type")
    if msg_type == "SUCCESS":
        authorization_id = data.get("authorizationId") or data.get("authorization_id")
        if not authorization_id:
            logger.warning("Portal SUCCESS message without authorizationId")
            return None
        return PortalSuccess(authorization_id=str(authorization_id))
    if msg_type == "ERROR":
        try:
            status = int(data.get("status") or 0)
        except (TypeError, ValueError):
            status = 0
        return PortalError(
            code=str(data.get("code") or "UNKNOWN"),
            status=status,
            message=str(data.get("message") or "Connection failed"),
        )
    if msg_type == "CLOSED":
        return PortalClosed(modal=False)
    if msg_type == "CLOSE_MODAL":
        return PortalClosed(modal=True)

    if msg_type:
        logger.debug(f"Ignoring unknown portal message type: {msg_type}")
    return None


class PortalMessageChannel:
    """Dispatches portal events to registered listeners."""

    def __init__(self):
        self._listeners: List[PortalListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: PortalListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: PortalListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def post(self, message: Any) -> Optional[PortalEvent]:
        """Parse a raw message and deliver it.

        Returns:
            The parsed event, or None if the message was ignored
        """
        event = parse_portal_message(message)
        if event is None:
            return None
        self.emit(event)
        return event

    def emit(self, event: PortalEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)
