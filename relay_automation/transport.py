# SPDX-License-Identifier: MPL-2.0
"""
Messaging transport contract.

A transport is a stateful session with an external messaging service. It is
created, initialized, reports lifecycle events to its listeners, sends
messages, and is destroyed when the connection supervisor replaces it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle states of the messaging connection."""
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


class TransportEventKind(Enum):
    """Events a transport reports to its listeners."""
    QR_CHALLENGE = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class TransportEvent:
    """A lifecycle event with its optional payload (QR data, failure reason)."""
    kind: TransportEventKind
    payload: Optional[str] = None


Listener = Callable[[TransportEvent], None]


class Transport(ABC):
    """Base class for messaging transports."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        """Register a listener for lifecycle events."""
        self._listeners.append(listener)

    def emit(self, kind: TransportEventKind, payload: Optional[str] = None) -> None:
        """Report a lifecycle event to all listeners."""
        event = TransportEvent(kind, payload)
        for listener in list(self._listeners):
            listener(event)

    @abstractmethod
    async def initialize(self) -> None:
        """Open the session. Raises on failure."""

    @abstractmethod
    async def get_status(self) -> ConnectionState:
        """Query the live state of the session."""

    @abstractmethod
    async def send(self, recipient: str, body: str) -> None:
        """Send a text message. Raises on failure; the error text is classified."""

    @abstractmethod
    async def destroy(self) -> None:
        """Close the session and release resources."""
