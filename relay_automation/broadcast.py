# SPDX-License-Identifier: MPL-2.0
"""
Realtime broadcast channel.

Supervisor transitions and dispatch outcomes are emitted as named events to
any number of observers. Emitting never blocks and never fails: observer
errors are logged and dropped.

NtfyObserver forwards the operator-relevant events to an ntfy topic
(see https://docs.ntfy.sh/publish/).
"""

import asyncio
import logging
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

Observer = Callable[[str, Any], None]


class BroadcastChannel:
    """
    Fire-and-forget fan-out of events to observers.

    Example:
        >>> channel = BroadcastChannel()
        >>> channel.subscribe(lambda event, payload: print(event, payload))
        >>> channel.emit("ready", "Transport is ready")
    """

    def __init__(self) -> None:
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer) -> None:
        """Register an observer called as ``observer(event, payload)``."""
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        """Remove a previously registered observer."""
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, event: str, payload: Any = None) -> None:
        """Deliver an event to every observer."""
        logger.debug(f"Broadcasting {event}: {payload!r}")
        for observer in list(self._observers):
            try:
                observer(event, payload)
            except Exception as e:
                logger.warning(f"Observer failed handling {event}: {e}")


class Priority(IntEnum):
    """Message priority levels for ntfy notifications."""
    MIN = 1
    LOW = 2
    DEFAULT = 3
    HIGH = 4
    MAX = 5


class NtfyPublisher:
    """
    Minimal client publishing messages to an ntfy topic.

    Args:
        topic: The topic to publish messages to
        server: The ntfy server URL (default: https://ntfy.sh)
        token: Optional access token for authentication
        timeout: Request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        topic: str,
        server: str = "https://ntfy.sh",
        token: Optional[str] = None,
        timeout: int = 30,
    ) -> None:
        if not topic:
            raise ValueError("Topic cannot be empty")

        self.topic = topic
        self.server = server.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._url = urljoin(self.server + "/", self.topic)

    def publish(
        self,
        message: str,
        title: Optional[str] = None,
        priority: Optional[Priority] = None,
        tags: Optional[List[str]] = None,
    ) -> bool:
        """
        Publish a message to the configured topic.

        Returns:
            True if the message was accepted, False otherwise
        """
        headers: Dict[str, str] = {}

        if title:
            headers["Title"] = title

        if priority is not None:
            headers["Priority"] = str(int(priority))

        if tags:
            headers["Tags"] = ",".join(tags)

        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            request = Request(
                self._url,
                data=message.encode("utf-8"),
                headers=headers,
                method="POST",
            )

            with urlopen(request, timeout=self.timeout) as response:
                if response.status == 200:
                    logger.debug(f"Published to {self.topic}: {message[:50]}...")
                    return True
                logger.warning(f"Unexpected status {response.status} from ntfy server")
                return False

        except HTTPError as e:
            logger.error(f"HTTP error publishing to ntfy: {e.code} {e.reason}")
            return False
        except URLError as e:
            logger.error(f"URL error publishing to ntfy: {e.reason}")
            return False
        except Exception as e:
            logger.error(f"Error publishing to ntfy: {e}")
            return False

    def __repr__(self) -> str:
        return f"NtfyPublisher(topic={self.topic!r}, server={self.server!r})"


class NtfyObserver:
    """
    Broadcast observer that pushes operator alerts to ntfy.

    Only events an operator can act on are forwarded. Publishing happens in a
    worker thread when an event loop is running, so the broadcast never waits
    on the ntfy server.
    """

    FORWARDED: Dict[str, Any] = {
        "connection_failed": ("Messaging transport down", Priority.HIGH, ["rotating_light"]),
        "auth_failure": ("Messaging authentication failed", Priority.HIGH, ["warning"]),
        "automation_notification": ("Relay automation", Priority.DEFAULT, ["electric_plug"]),
    }

    def __init__(self, publisher: NtfyPublisher) -> None:
        self.publisher = publisher

    def __call__(self, event: str, payload: Any) -> None:
        if event not in self.FORWARDED:
            return

        title, priority, tags = self.FORWARDED[event]
        if isinstance(payload, dict):
            message = str(payload.get("message", payload))
        else:
            message = str(payload)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.publisher.publish(message, title=title, priority=priority, tags=tags)
            return

        loop.run_in_executor(
            None,
            lambda: self.publisher.publish(message, title=title, priority=priority, tags=tags),
        )
