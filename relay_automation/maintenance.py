# SPDX-License-Identifier: MPL-2.0
"""Periodic maintenance: supervisor resync and retry queue drain."""

import logging
from typing import Optional

from relay_automation.retry_queue import DrainResult, RetryQueue
from relay_automation.scheduler import RepeatingHandle, Scheduler
from relay_automation.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


class MaintenanceTick:
    """Keeps the supervisor's belief current and flushes pending messages."""

    def __init__(self, supervisor: ConnectionSupervisor, queue: RetryQueue) -> None:
        self.supervisor = supervisor
        self.queue = queue

    def start(self, scheduler: Scheduler, interval: float = 15.0) -> RepeatingHandle:
        """Run every ``interval`` seconds."""
        return scheduler.call_every(interval, self.run)

    async def run(self) -> Optional[DrainResult]:
        """
        Resync the supervisor, then drain the queue if the transport is ready.

        Returns:
            DrainResult when a drain ran, None otherwise
        """
        try:
            await self.supervisor.resync()

            if self.supervisor.is_deliverable and len(self.queue):
                return await self.queue.drain_once()
        except Exception as e:
            logger.error(f"Error in periodic maintenance: {e}", exc_info=True)
        return None
