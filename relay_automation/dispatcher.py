# SPDX-License-Identifier: MPL-2.0
"""
Notification dispatch.

Sends one message through the supervised transport and classifies the
result. Failures are classified by the ERROR_POLICY table, matched in order
against the lower-cased error text; the first rule that matches wins.

The dispatcher never touches the retry queue. Callers decide what to do with
a retryable outcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from relay_automation.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 45.0


class ErrorKind(Enum):
    """Classes of delivery failure."""
    NOT_READY = "not_ready"
    SESSION = "session"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorRule:
    """One row of the error classification policy."""
    kind: ErrorKind
    symptoms: Tuple[str, ...]
    retryable: bool
    reconnect: bool

    def matches(self, message: str) -> bool:
        text = message.lower()
        return any(symptom in text for symptom in self.symptoms)


# "navigation timeout" must be tested before the generic "timeout"
ERROR_POLICY: Tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorKind.SESSION,
        ("session closed", "protocol error", "target closed", "navigation timeout", "page crashed"),
        retryable=True,
        reconnect=True,
    ),
    ErrorRule(
        ErrorKind.TRANSIENT,
        ("timeout", "network", "connection reset", "econnreset"),
        retryable=True,
        reconnect=False,
    ),
)

FATAL_RULE = ErrorRule(ErrorKind.FATAL, (), retryable=False, reconnect=False)


def classify_error(message: str) -> ErrorRule:
    """
    Find the policy rule for an error message.

    Args:
        message: Error text reported by the transport

    Returns:
        The first matching rule, or FATAL_RULE when none matches
    """
    for rule in ERROR_POLICY:
        if rule.matches(message):
            return rule
    return FATAL_RULE


@dataclass(frozen=True)
class Outcome:
    """Result of one delivery attempt."""
    success: bool
    error_kind: Optional[ErrorKind] = None
    retryable: bool = False
    error: Optional[str] = None

    @classmethod
    def delivered(cls) -> "Outcome":
        return cls(success=True)


class NotificationDispatcher:
    """
    Sends messages through the transport owned by a ConnectionSupervisor.

    Args:
        supervisor: Supervisor providing readiness and the live transport
        timeout: Seconds to wait for the transport before giving up (default: 45)
    """

    def __init__(self, supervisor: ConnectionSupervisor, timeout: float = DEFAULT_SEND_TIMEOUT) -> None:
        self.supervisor = supervisor
        self.timeout = timeout

    async def send(self, recipient: str, body: str) -> Outcome:
        """
        Deliver one message.

        Returns immediately with a retryable NOT_READY outcome when the
        supervisor is not ready; the transport is not called in that case.

        Args:
            recipient: Destination address (phone number or chat id)
            body: Message text

        Returns:
            Outcome describing success or the classified failure
        """
        transport = self.supervisor.transport
        if not self.supervisor.is_deliverable or transport is None:
            state = self.supervisor.state.value
            logger.info(f"Transport not ready ({state}), message not sent")
            return Outcome(
                success=False,
                error_kind=ErrorKind.NOT_READY,
                retryable=True,
                error=f"Transport not ready. State: {state}",
            )

        logger.debug(f"Sending message to {recipient}")
        try:
            await asyncio.wait_for(transport.send(recipient, body), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Message to {recipient} timed out after {self.timeout:.0f} seconds")
            return Outcome(
                success=False,
                error_kind=ErrorKind.TIMEOUT,
                retryable=True,
                error=f"Message timeout after {self.timeout:.0f} seconds",
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            rule = classify_error(message)
            logger.error(f"Error sending message ({rule.kind.value}): {message}")

            if rule.reconnect:
                self.supervisor.report_session_error(message)

            return Outcome(
                success=False,
                error_kind=rule.kind,
                retryable=rule.retryable,
                error=message,
            )

        logger.info(f"Message sent to {recipient}")
        return Outcome.delivered()
