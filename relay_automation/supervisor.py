# SPDX-License-Identifier: MPL-2.0
"""
Connection supervisor for the messaging transport.

Owns the single ConnectionState of the process and the transport instance.
Transport events are translated into state transitions:

    UNINITIALIZED --start--> CONNECTING --authenticated--> AUTHENTICATED
    AUTHENTICATED --ready--> READY
    any --auth failure--> AUTH_FAILED (no automatic reconnection)
    CONNECTING/AUTHENTICATED/READY --disconnect--> DISCONNECTED

From DISCONNECTED a new transport is created after ``base_delay * attempt``
seconds, up to ``max_attempts`` times. After that the supervisor stays
DISCONNECTED until restart() is called.

The reconnection timer and manual restart share one pending slot, so a
restart cancels a scheduled reconnection.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from relay_automation.broadcast import BroadcastChannel
from relay_automation.scheduler import Handle, Scheduler
from relay_automation.transport import (
    ConnectionState,
    Transport,
    TransportEvent,
    TransportEventKind,
)

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]

DELIVERABLE_STATES = (ConnectionState.AUTHENTICATED, ConnectionState.READY)
DISCONNECTABLE_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.AUTHENTICATED,
    ConnectionState.READY,
)


@dataclass
class ReconnectBudget:
    """Reconnection attempts used so far and the backoff parameters."""
    attempts: int = 0
    max_attempts: int = 5
    base_delay: float = 5.0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay before the given (1-based) attempt."""
        return self.base_delay * attempt

    def consume(self) -> float:
        """Use one attempt and return the delay before it."""
        self.attempts += 1
        return self.delay_for(self.attempts)

    def reset(self) -> None:
        self.attempts = 0


class ConnectionSupervisor:
    """
    State machine supervising the messaging transport.

    Args:
        transport_factory: Creates a fresh transport for each connection attempt
        scheduler: Timer source for backoff, restart and queue flush delays
        broadcast: Channel receiving transition events for observers
        budget: Reconnection budget (default: 5 attempts, 5s base delay)
        restart_delay: Seconds between manual restart and reconnection
        ready_flush_delay: Seconds after READY before ready listeners run
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        scheduler: Scheduler,
        broadcast: BroadcastChannel,
        budget: Optional[ReconnectBudget] = None,
        restart_delay: float = 3.0,
        ready_flush_delay: float = 2.0,
    ) -> None:
        self._transport_factory = transport_factory
        self._scheduler = scheduler
        self._broadcast = broadcast
        self.budget = budget or ReconnectBudget()
        self.restart_delay = restart_delay
        self.ready_flush_delay = ready_flush_delay

        self._state = ConnectionState.UNINITIALIZED
        self._transport: Optional[Transport] = None
        self._pending: Optional[Handle] = None
        self._ready_listeners: List[Callable[[], Any]] = []
        self._flush_handles: List[Handle] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def is_deliverable(self) -> bool:
        """True when messages may be handed to the transport."""
        return self._transport is not None and self._state in DELIVERABLE_STATES

    @property
    def reconnect_pending(self) -> bool:
        return self._pending is not None

    def add_ready_listener(self, listener: Callable[[], Any]) -> None:
        """Call ``listener`` shortly after every transition to READY."""
        self._ready_listeners.append(listener)

    def status(self) -> Dict[str, Any]:
        """Snapshot of the supervisor state for status reporting."""
        return {
            "state": self._state.value,
            "ready": self.is_deliverable,
            "attempts": self.budget.attempts,
            "max_attempts": self.budget.max_attempts,
            "has_transport": self._transport is not None,
            "reconnect_pending": self.reconnect_pending,
        }

    async def start(self) -> None:
        """Create the first transport and begin connecting."""
        if self._state is not ConnectionState.UNINITIALIZED:
            logger.warning(f"Start ignored, supervisor is {self._state.value}")
            return
        if self._pending is not None:
            logger.warning("Start ignored, a connection is already scheduled")
            return
        await self._connect()

    async def restart(self) -> None:
        """
        Tear down the transport and connect again after ``restart_delay``.

        Resets the reconnection budget and cancels any scheduled reconnection.
        """
        logger.info("Transport restart requested")

        self._cancel_pending()
        self._cancel_ready_flush()
        old = self._transport
        self._transport = None
        self.budget.reset()
        self._set_state(ConnectionState.UNINITIALIZED)
        self._pending = self._scheduler.call_later(self.restart_delay, self._connect)

        await self._destroy(old)
        self._broadcast.emit("message", "Transport restart initiated")

    async def shutdown(self) -> None:
        """Cancel timers and destroy the transport."""
        self._cancel_pending()
        self._cancel_ready_flush()
        old = self._transport
        self._transport = None
        self._set_state(ConnectionState.UNINITIALIZED)
        await self._destroy(old)

    def report_session_error(self, reason: str) -> None:
        """Treat a session-level send failure as a disconnect signal."""
        logger.warning(f"Session error reported: {reason}")
        self._handle_disconnect(reason)

    async def resync(self) -> None:
        """
        Align the believed state with the state the transport reports.

        Adopting READY resets the reconnection budget. Adopting DISCONNECTED
        from a connected state goes through the reconnection policy, the same
        way a disconnect event does.
        """
        transport = self._transport
        if transport is None:
            return

        try:
            live = await transport.get_status()
        except Exception as e:
            logger.warning(f"Cannot query transport status: {e}")
            return

        if transport is not self._transport or live is self._state:
            return

        previous = self._state
        logger.info(f"Transport state drifted: believed {previous.value}, reported {live.value}")
        self._set_state(live)

        if live is ConnectionState.READY:
            self.budget.reset()
            self._cancel_pending()
        elif live is ConnectionState.DISCONNECTED and previous in DISCONNECTABLE_STATES:
            self._cancel_ready_flush()
            self._schedule_reconnect()

        self._broadcast.emit("status_update", {
            "ready": self.is_deliverable,
            "state": live.value,
            "previous": previous.value,
        })

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug(f"Connection state {self._state.value} -> {state.value}")
            self._state = state

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _cancel_ready_flush(self) -> None:
        for handle in self._flush_handles:
            handle.cancel()
        self._flush_handles = []

    async def _destroy(self, transport: Optional[Transport]) -> None:
        if transport is None:
            return
        try:
            await transport.destroy()
        except Exception as e:
            logger.warning(f"Error destroying old transport: {e}")

    async def _connect(self) -> None:
        self._pending = None
        old = self._transport
        self._transport = None
        await self._destroy(old)

        self._set_state(ConnectionState.CONNECTING)

        transport = self._transport_factory()
        self._transport = transport
        transport.subscribe(lambda event: self._on_event(transport, event))

        logger.info("Initializing messaging transport")
        try:
            await transport.initialize()
        except Exception as e:
            logger.error(f"Transport initialization failed: {e}")
            if transport is self._transport:
                self._handle_disconnect(f"initialization failed: {e}")

    def _on_event(self, transport: Transport, event: TransportEvent) -> None:
        if transport is not self._transport:
            logger.debug(f"Ignoring {event.kind.value} from a replaced transport")
            return

        kind = event.kind
        if kind is TransportEventKind.QR_CHALLENGE:
            logger.info("QR challenge received")
            self._broadcast.emit("qr", event.payload)
            self._broadcast.emit("message", "QR code received, please scan")
        elif kind is TransportEventKind.AUTHENTICATED:
            self._mark_authenticated()
        elif kind is TransportEventKind.READY:
            if self._state is ConnectionState.CONNECTING:
                self._mark_authenticated()
            self._mark_ready()
        elif kind is TransportEventKind.AUTH_FAILURE:
            self._mark_auth_failed(event.payload or "unknown reason")
        elif kind is TransportEventKind.DISCONNECTED:
            self._handle_disconnect(event.payload or "unknown reason")

    def _mark_authenticated(self) -> None:
        if self._state is not ConnectionState.CONNECTING:
            logger.debug(f"Ignoring authenticated signal while {self._state.value}")
            return
        logger.info("Messaging transport authenticated")
        self._set_state(ConnectionState.AUTHENTICATED)
        self.budget.reset()
        self._broadcast.emit("authenticated", "Authenticated!")
        self._broadcast.emit("message", "Authenticated!")

    def _mark_ready(self) -> None:
        if self._state is not ConnectionState.AUTHENTICATED:
            logger.debug(f"Ignoring ready signal while {self._state.value}")
            return
        logger.info("Messaging transport is ready")
        self._set_state(ConnectionState.READY)
        self.budget.reset()
        self._broadcast.emit("ready", "Messaging transport is ready!")
        self._broadcast.emit("message", "Messaging transport is ready!")

        self._cancel_ready_flush()
        self._flush_handles = [
            self._scheduler.call_later(self.ready_flush_delay, listener)
            for listener in self._ready_listeners
        ]

    def _mark_auth_failed(self, reason: str) -> None:
        logger.error(f"Authentication failure: {reason}")
        self._cancel_pending()
        self._set_state(ConnectionState.AUTH_FAILED)
        self._broadcast.emit("auth_failure", f"Authentication failure: {reason}")
        self._broadcast.emit("message", f"Authentication failure: {reason}")

    def _handle_disconnect(self, reason: str) -> None:
        if self._state not in DISCONNECTABLE_STATES:
            logger.debug(f"Ignoring disconnect ({reason}) while {self._state.value}")
            return

        logger.warning(f"Messaging transport disconnected: {reason}")
        self._set_state(ConnectionState.DISCONNECTED)
        self._cancel_ready_flush()
        self._broadcast.emit("disconnected", f"Disconnected: {reason}")
        self._broadcast.emit("message", f"Disconnected: {reason}")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._pending is not None:
            logger.debug("Reconnection already scheduled")
            return

        if self.budget.exhausted:
            message = (
                f"Messaging connection failed after {self.budget.max_attempts} "
                f"reconnection attempts. Manual restart required."
            )
            logger.error(message)
            self._broadcast.emit("connection_failed", {
                "message": message,
                "attempts": self.budget.attempts,
            })
            self._broadcast.emit("message", message)
            return

        delay = self.budget.consume()
        logger.info(
            f"Reconnecting messaging transport "
            f"({self.budget.attempts}/{self.budget.max_attempts}) in {delay:.0f}s"
        )
        self._pending = self._scheduler.call_later(delay, self._connect)
