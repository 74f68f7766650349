# SPDX-License-Identifier: MPL-2.0
"""
Retry queue for notifications that could not be delivered.

Messages are kept in strict FIFO order. Draining stops at the first message
that fails with a retryable error; that message goes back to the head, so a
stuck message blocks the ones behind it instead of being overtaken.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, List

from relay_automation.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueuedMessage:
    """A notification waiting for delivery."""
    recipient: str
    body: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now().astimezone())
    category: str = "automation"


@dataclass
class DrainResult:
    """Summary of one drain pass."""
    delivered: int = 0
    dropped: int = 0
    blocked: bool = False


class RetryQueue:
    """
    FIFO queue of undelivered messages.

    Args:
        dispatcher: Dispatcher used to send queued messages
        inter_message_delay: Seconds to wait between two sends of one drain
        sleep: Coroutine function used for the delay (default: asyncio.sleep)
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        inter_message_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if inter_message_delay < 1.0:
            raise ValueError(f"Inter-message delay must be at least 1 second, got {inter_message_delay}")

        self._dispatcher = dispatcher
        self.inter_message_delay = inter_message_delay
        self._sleep = sleep
        self._messages: Deque[QueuedMessage] = deque()
        self._draining = False

    def __len__(self) -> int:
        return len(self._messages)

    def enqueue(self, message: QueuedMessage) -> None:
        """Append a message at the tail."""
        self._messages.append(message)
        logger.info(f"Message for {message.recipient} queued for retry ({len(self._messages)} pending)")

    def push_front(self, message: QueuedMessage) -> None:
        """Put a message back at the head."""
        self._messages.appendleft(message)

    def snapshot(self) -> List[QueuedMessage]:
        """Pending messages, head first."""
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    async def drain_once(self) -> DrainResult:
        """
        Send queued messages in order until the queue is empty or blocked.

        Successful and fatally failed messages are removed. The first
        retryable failure is put back at the head and ends the pass.

        Returns:
            DrainResult for this pass
        """
        result = DrainResult()

        if self._draining:
            logger.debug("Drain already in progress")
            return result
        if not self._messages:
            return result

        self._draining = True
        logger.info(f"Processing {len(self._messages)} queued messages")
        try:
            while self._messages:
                message = self._messages.popleft()
                try:
                    outcome = await self._dispatcher.send(message.recipient, message.body)
                except asyncio.CancelledError:
                    self.push_front(message)
                    logger.info("Drain cancelled, message returned to queue")
                    raise

                if not outcome.success and outcome.retryable:
                    self.push_front(message)
                    result.blocked = True
                    logger.info(f"Message returned to queue for retry: {outcome.error}")
                    break

                if outcome.success:
                    result.delivered += 1
                    logger.info("Queued message sent successfully")
                else:
                    result.dropped += 1
                    logger.error(f"Queued message failed permanently: {outcome.error}")

                if self._messages:
                    await self._sleep(self.inter_message_delay)
        finally:
            self._draining = False

        return result
