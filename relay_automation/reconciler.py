# SPDX-License-Identifier: MPL-2.0
"""
Relay reconciliation.

Compares the state a schedule asks for with the observed relay state and
returns the toggle needed to correct it. The reconciler never writes to the
relay store itself; callers apply the returned command.

Only automatic power-down is notification-worthy. Automatic power-up is
silent.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Optional

from relay_automation.stores import RelayObservation, Schedule
from relay_automation.time_window import in_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToggleCommand:
    """Intent to set a relay to a new state."""
    relay_id: int
    state: bool
    notify: bool

    def __repr__(self) -> str:
        action = "ON" if self.state else "OFF"
        return f"ToggleCommand(relay {self.relay_id} -> {action}, notify={self.notify})"


@dataclass(frozen=True)
class TransitionAudit:
    """Record of a state change decided by the reconciler."""
    relay_id: int
    from_state: bool
    to_state: bool
    at: datetime
    schedule_id: Optional[int] = None


class RelayReconciler:
    """
    Decides the toggle needed to bring one relay in line with its schedule.

    Args:
        audit_size: Number of transition audit entries kept in memory
    """

    def __init__(self, audit_size: int = 256) -> None:
        self._audit: Deque[TransitionAudit] = deque(maxlen=audit_size)

    @property
    def audit(self) -> List[TransitionAudit]:
        """Recorded transitions, oldest first."""
        return list(self._audit)

    def reconcile(
        self,
        schedule: Schedule,
        observation: RelayObservation,
        now: datetime,
    ) -> Optional[ToggleCommand]:
        """
        Reconcile one relay against its schedule.

        Args:
            schedule: The relay's schedule
            observation: Freshly read relay state
            now: Current local time

        Returns:
            ToggleCommand if the relay must change state, None otherwise
        """
        desired = in_window(now.time(), schedule.start_time, schedule.end_time)

        logger.debug(
            f"Relay {schedule.relay_id}: current state {observation.current_state}, "
            f"should be on: {desired}"
        )

        if desired == observation.current_state:
            return None

        self._audit.append(TransitionAudit(
            relay_id=schedule.relay_id,
            from_state=observation.current_state,
            to_state=desired,
            at=now,
            schedule_id=schedule.id,
        ))

        return ToggleCommand(
            relay_id=schedule.relay_id,
            state=desired,
            notify=observation.current_state and not desired,
        )
