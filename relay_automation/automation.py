# SPDX-License-Identifier: MPL-2.0
"""
Relay automation service.

Wires the schedule monitor, connection supervisor, dispatcher, retry queue
and maintenance tick together, owns their timers, and exposes the operations
used by the daemon and by operators:

- run_schedule_tick(): reconcile all schedules now
- notify(): deliver a message, queueing it when delivery can be retried
- enqueue_notification(): queue a message for the next drain
- get_supervisor_status(): connection state, queue length, attempts
- restart_transport(): manual transport restart
- refresh(): one maintenance pass now
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from relay_automation.broadcast import BroadcastChannel
from relay_automation.dispatcher import DEFAULT_SEND_TIMEOUT, NotificationDispatcher, Outcome
from relay_automation.maintenance import MaintenanceTick
from relay_automation.monitor import Clock, ScheduleMonitor, TickReport, local_now
from relay_automation.retry_queue import DrainResult, QueuedMessage, RetryQueue
from relay_automation.scheduler import Handle, Scheduler
from relay_automation.stores import RelayStore, ScheduleStore
from relay_automation.supervisor import ConnectionSupervisor, ReconnectBudget, TransportFactory

logger = logging.getLogger(__name__)


@dataclass
class AutomationSettings:
    """Timing and retry settings, in seconds."""
    transport_startup_delay: float = 2.0
    schedule_startup_delay: float = 30.0
    schedule_interval: float = 60.0
    maintenance_interval: float = 15.0
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    reconnect_base_delay: float = 5.0
    max_reconnect_attempts: int = 5
    restart_delay: float = 3.0
    ready_flush_delay: float = 2.0
    inter_message_delay: float = 2.0


class RelayAutomation:
    """
    The relay automation engine.

    Args:
        schedule_store: Source of relay schedules
        relay_store: Relay states and log
        transport_factory: Creates messaging transports
        recipient: Default destination of automation notifications
        scheduler: Timer source
        broadcast: Channel for status events (default: a new channel)
        settings: Timing settings (default: AutomationSettings())
        clock: Returns the current local time
        sleep: Coroutine function used between queued sends
    """

    def __init__(
        self,
        schedule_store: ScheduleStore,
        relay_store: RelayStore,
        transport_factory: TransportFactory,
        recipient: str,
        scheduler: Scheduler,
        broadcast: Optional[BroadcastChannel] = None,
        settings: Optional[AutomationSettings] = None,
        clock: Clock = local_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.recipient = recipient
        self.scheduler = scheduler
        self.settings = settings or AutomationSettings()
        self.broadcast = broadcast or BroadcastChannel()
        self.clock = clock

        self.supervisor = ConnectionSupervisor(
            transport_factory,
            scheduler,
            self.broadcast,
            budget=ReconnectBudget(
                max_attempts=self.settings.max_reconnect_attempts,
                base_delay=self.settings.reconnect_base_delay,
            ),
            restart_delay=self.settings.restart_delay,
            ready_flush_delay=self.settings.ready_flush_delay,
        )
        self.dispatcher = NotificationDispatcher(self.supervisor, timeout=self.settings.send_timeout)
        self.queue = RetryQueue(
            self.dispatcher,
            inter_message_delay=self.settings.inter_message_delay,
            sleep=sleep,
        )
        self.monitor = ScheduleMonitor(schedule_store, relay_store, self.notify, clock=clock)
        self.maintenance = MaintenanceTick(self.supervisor, self.queue)

        self.supervisor.add_ready_listener(self.flush_queue)
        self._handles: List[Handle] = []

    def start(self) -> None:
        """Schedule transport startup, maintenance and schedule monitoring."""
        if self._handles:
            logger.warning("Automation already started")
            return

        logger.info("Starting relay automation")
        self._handles = [
            self.scheduler.call_later(self.settings.transport_startup_delay, self.supervisor.start),
            self.maintenance.start(self.scheduler, self.settings.maintenance_interval),
            self.monitor.start(
                self.scheduler,
                interval=self.settings.schedule_interval,
                initial_delay=self.settings.schedule_startup_delay,
            ),
        ]

    async def stop(self) -> None:
        """Cancel all timers and shut the transport down."""
        for handle in self._handles:
            handle.cancel()
        self._handles = []
        await self.supervisor.shutdown()
        logger.info("Relay automation stopped")

    async def run_schedule_tick(self) -> TickReport:
        """Reconcile every active schedule now."""
        return await self.monitor.run_tick()

    async def notify(self, body: str, recipient: Optional[str] = None) -> Outcome:
        """
        Deliver an automation notification.

        A retryable failure queues the message. Every attempt is broadcast as
        an ``automation_notification`` event.

        Args:
            body: Message text
            recipient: Destination (default: the configured recipient)

        Returns:
            Outcome of the immediate delivery attempt
        """
        recipient = recipient or self.recipient
        outcome = await self.dispatcher.send(recipient, body)

        if not outcome.success and outcome.retryable:
            self.queue.enqueue(QueuedMessage(
                recipient=recipient,
                body=body,
                enqueued_at=self.clock(),
                category="automation",
            ))

        self.broadcast.emit("automation_notification", {
            "message": body,
            "timestamp": self.clock().isoformat(),
            "sent": outcome.success,
            "error": outcome.error,
        })
        return outcome

    def enqueue_notification(self, recipient: str, body: str, category: str = "manual") -> QueuedMessage:
        """Queue a message; it is sent by the next drain."""
        message = QueuedMessage(recipient=recipient, body=body, enqueued_at=self.clock(), category=category)
        self.queue.enqueue(message)
        return message

    async def send_test_notification(self) -> Outcome:
        """Send a test message to the configured recipient, without queueing."""
        body = (
            "SYSTEM TEST NOTIFICATION\n"
            "\n"
            "This is a test message from the relay automation service.\n"
            "\n"
            "Notification delivery is working.\n"
            f"Test time: {self.clock().strftime('%Y-%m-%d %H:%M:%S')}"
        )
        return await self.dispatcher.send(self.recipient, body)

    async def flush_queue(self) -> Optional[DrainResult]:
        """Drain the retry queue if the transport is ready."""
        if not self.supervisor.is_deliverable:
            logger.debug("Transport not ready, keeping messages in queue")
            return None
        return await self.queue.drain_once()

    async def refresh(self) -> Optional[DrainResult]:
        """Run one maintenance pass now."""
        return await self.maintenance.run()

    async def restart_transport(self) -> None:
        """Restart the messaging transport and reset the reconnection budget."""
        await self.supervisor.restart()

    def get_supervisor_status(self) -> Dict[str, Any]:
        """Connection state, queue length and reconnection attempts."""
        status = self.supervisor.status()
        status["queue_length"] = len(self.queue)
        return status
