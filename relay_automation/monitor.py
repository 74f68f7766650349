# SPDX-License-Identifier: MPL-2.0
"""
Schedule monitor.

Every tick reads the active schedules, reconciles each relay against its
window and applies the resulting toggles. A relay switched off by the
automation produces a notification. One failing schedule is logged and
skipped; the others are still processed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from relay_automation.reconciler import RelayReconciler, ToggleCommand
from relay_automation.scheduler import RepeatingHandle, Scheduler
from relay_automation.stores import RelayStore, Schedule, ScheduleStore
from relay_automation.time_window import format_window

logger = logging.getLogger(__name__)

Notifier = Callable[[str], Awaitable[Any]]
Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


def build_power_down_message(schedule: Schedule, now: datetime) -> str:
    """
    Build the notification text for an automatic power-down.

    Args:
        schedule: Schedule of the relay that was switched off
        now: Time of the switch

    Returns:
        Message body
    """
    return (
        "AUTOMATIC NOTIFICATION\n"
        "\n"
        f"Relay channel {schedule.relay_id} was switched off automatically "
        "because it is outside operating hours.\n"
        "\n"
        f"Time: {now.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"Operating hours: {format_window(schedule.start_time, schedule.end_time)}\n"
        "Status: system running normally\n"
        "\n"
        "Automated message from the relay automation service"
    )


@dataclass
class TickReport:
    """What one schedule tick did."""
    checked: int = 0
    toggles: List[ToggleCommand] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    notified: int = 0


class ScheduleMonitor:
    """
    Periodic reconciliation of all active schedules.

    Args:
        schedule_store: Source of active schedules
        relay_store: Relay states and relay log
        notifier: Coroutine function delivering a power-down message
        reconciler: Reconciler deciding toggles (default: a new one)
        clock: Returns the current local time (default: datetime.now)
    """

    def __init__(
        self,
        schedule_store: ScheduleStore,
        relay_store: RelayStore,
        notifier: Notifier,
        reconciler: Optional[RelayReconciler] = None,
        clock: Clock = local_now,
    ) -> None:
        self.schedule_store = schedule_store
        self.relay_store = relay_store
        self.notifier = notifier
        self.reconciler = reconciler or RelayReconciler()
        self.clock = clock

    def start(
        self,
        scheduler: Scheduler,
        interval: float = 60.0,
        initial_delay: float = 5.0,
    ) -> RepeatingHandle:
        """Run a tick after ``initial_delay`` and then every ``interval`` seconds."""
        logger.info(f"Starting schedule monitoring every {interval:.0f}s")
        return scheduler.call_every(interval, self.run_tick, initial_delay=initial_delay)

    async def run_tick(self) -> TickReport:
        """
        Check all active schedules once.

        Safe to call at any time; relays already in the scheduled state are
        left alone.

        Returns:
            TickReport summarizing the tick
        """
        report = TickReport()
        now = self.clock()
        logger.debug(f"Checking schedules at {now.strftime('%H:%M:%S')}")

        try:
            schedules = await self.schedule_store.list_active()
        except Exception as e:
            logger.error(f"Failed to list active schedules: {e}")
            return report

        for schedule in schedules:
            report.checked += 1
            try:
                await self._process(schedule, now, report)
            except Exception as e:
                logger.error(f"Skipping relay {schedule.relay_id} this tick: {e}")
                report.skipped.append(schedule.relay_id)

        if report.toggles:
            logger.info(f"Schedule tick applied {len(report.toggles)} toggle(s)")
        return report

    async def _process(self, schedule: Schedule, now: datetime, report: TickReport) -> None:
        observation = await self.relay_store.observe(schedule.relay_id)
        command = self.reconciler.reconcile(schedule, observation, now)
        if command is None:
            return

        await self.relay_store.set_state(command.relay_id, command.state)
        report.toggles.append(command)
        logger.info(f"Relay {command.relay_id} turned {'ON' if command.state else 'OFF'} automatically")

        try:
            await self.relay_store.append_log(command.relay_id, command.state, now)
        except Exception as e:
            logger.warning(f"Failed to log state change of relay {command.relay_id}: {e}")

        if command.notify:
            try:
                await self.notifier(build_power_down_message(schedule, now))
            except Exception as e:
                logger.error(f"Failed to notify power-down of relay {command.relay_id}: {e}")
                return
            report.notified += 1
