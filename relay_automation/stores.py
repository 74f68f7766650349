# SPDX-License-Identifier: MPL-2.0
"""
Schedule and relay store contracts.

The automation engine reads schedules and relay states through the abstract
ScheduleStore and RelayStore interfaces. Two implementations are provided:

- MemoryStore: in-process store, used by tests and for local experiments
- SupabaseStore: PostgREST client for the ``relay_schedules``, ``relays``
  and ``relay_logs`` tables
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from datetime import time as dt_time
from typing import Any, Dict, List, Optional

import requests

from relay_automation.time_window import parse_time_of_day

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the schedule or relay store cannot be read or written."""
    pass


@dataclass(frozen=True)
class Schedule:
    """A daily power window for one relay."""
    id: Optional[int]
    relay_id: int
    start_time: dt_time
    end_time: dt_time
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Schedule":
        """Create from a ``relay_schedules`` row."""
        try:
            return cls(
                id=row.get('id'),
                relay_id=int(row['relay_id']),
                start_time=parse_time_of_day(row['start_time']),
                end_time=parse_time_of_day(row['end_time']),
                is_active=bool(row.get('is_active', True)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Invalid schedule row {row!r}: {e}")

    def to_row(self) -> Dict[str, Any]:
        """Convert to a ``relay_schedules`` row."""
        return {
            'relay_id': self.relay_id,
            'start_time': self.start_time.strftime('%H:%M:%S'),
            'end_time': self.end_time.strftime('%H:%M:%S'),
            'is_active': self.is_active,
        }


@dataclass(frozen=True)
class RelayObservation:
    """The state of a relay as read from the store."""
    relay_id: int
    current_state: bool


@dataclass(frozen=True)
class RelayLogEntry:
    """One entry of the append-only relay log."""
    relay_id: int
    state: bool
    timestamp: datetime


class ScheduleStore(ABC):
    """Source of relay schedules."""

    @abstractmethod
    async def list_active(self) -> List[Schedule]:
        """Return all schedules with ``is_active`` set."""

    @abstractmethod
    async def upsert(self, schedule: Schedule) -> Schedule:
        """Create or replace the schedule for ``schedule.relay_id``."""

    @abstractmethod
    async def delete(self, relay_id: int) -> None:
        """Remove the schedule of a relay."""


class RelayStore(ABC):
    """Relay state and relay log."""

    @abstractmethod
    async def get_state(self, relay_id: int) -> bool:
        """Return the current state of a relay."""

    @abstractmethod
    async def set_state(self, relay_id: int, state: bool) -> None:
        """Set the state of a relay."""

    @abstractmethod
    async def append_log(self, relay_id: int, state: bool, timestamp: datetime) -> None:
        """Append a state change to the relay log."""

    async def observe(self, relay_id: int) -> RelayObservation:
        """Read a fresh observation of a relay."""
        return RelayObservation(relay_id=relay_id, current_state=await self.get_state(relay_id))


@dataclass
class MemoryStore(ScheduleStore, RelayStore):
    """Schedule and relay store kept in process memory."""
    schedules: Dict[int, Schedule] = field(default_factory=dict)
    states: Dict[int, bool] = field(default_factory=dict)
    log: List[RelayLogEntry] = field(default_factory=list)

    async def list_active(self) -> List[Schedule]:
        return [s for s in self.schedules.values() if s.is_active]

    async def upsert(self, schedule: Schedule) -> Schedule:
        existing = self.schedules.get(schedule.relay_id)
        if schedule.id is None:
            if existing is not None:
                schedule_id = existing.id
            else:
                schedule_id = max((s.id or 0 for s in self.schedules.values()), default=0) + 1
            schedule = replace(schedule, id=schedule_id)
        self.schedules[schedule.relay_id] = schedule
        return schedule

    async def delete(self, relay_id: int) -> None:
        self.schedules.pop(relay_id, None)

    async def get_state(self, relay_id: int) -> bool:
        if relay_id not in self.states:
            raise StoreError(f"Relay {relay_id} not found")
        return self.states[relay_id]

    async def set_state(self, relay_id: int, state: bool) -> None:
        if relay_id not in self.states:
            raise StoreError(f"Relay {relay_id} not found")
        self.states[relay_id] = state

    async def append_log(self, relay_id: int, state: bool, timestamp: datetime) -> None:
        self.log.append(RelayLogEntry(relay_id=relay_id, state=state, timestamp=timestamp))


class SupabaseStore(ScheduleStore, RelayStore):
    """
    Store backed by a Supabase (PostgREST) database.

    Blocking HTTP calls are run in a worker thread so the event loop keeps
    serving transport events while the store is queried.

    Attributes:
        url (str): Project URL (e.g. https://xyz.supabase.co)
        timeout (int): Request timeout in seconds
        session (requests.Session): HTTP session for connection pooling
    """

    SCHEDULES_TABLE = "relay_schedules"
    RELAYS_TABLE = "relays"
    LOGS_TABLE = "relay_logs"

    def __init__(self, url: str, api_key: str, timeout: int = 30):
        """
        Initialize the store client.

        Args:
            url: Supabase project URL
            api_key: Service or anon key sent as ``apikey`` and bearer token
            timeout: Request timeout in seconds (default: 30)
        """
        if not url:
            raise ValueError("Store URL cannot be empty")

        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Any] = None,
        prefer: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Make a request to the REST endpoint of a table.

        Returns:
            Rows returned by the server (empty when none are requested)

        Raises:
            StoreError: If the request fails or the response is invalid
        """
        url = f"{self.url}/rest/v1/{table}"
        headers = {"Prefer": prefer} if prefer else None

        try:
            logger.debug(f"{method} {url} params={params}")
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()

            if not response.content:
                return []
            data = response.json()
            return data if isinstance(data, list) else [data]

        except requests.exceptions.HTTPError as e:
            error_msg = f"HTTP error from store ({table}): {e}"
            logger.error(error_msg)
            raise StoreError(error_msg)

        except requests.exceptions.RequestException as e:
            error_msg = f"Store request failed ({table}): {e}"
            logger.error(error_msg)
            raise StoreError(error_msg)

        except ValueError as e:
            error_msg = f"Invalid JSON response from store ({table}): {e}"
            logger.error(error_msg)
            raise StoreError(error_msg)

    async def _call(self, *args: Any, **kwargs: Any) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._request, *args, **kwargs)

    async def list_active(self) -> List[Schedule]:
        rows = await self._call(
            "GET",
            self.SCHEDULES_TABLE,
            params={"select": "id,relay_id,start_time,end_time,is_active", "is_active": "eq.true"},
        )
        return [Schedule.from_row(row) for row in rows]

    async def upsert(self, schedule: Schedule) -> Schedule:
        row = schedule.to_row()
        row['updated_at'] = datetime.now().astimezone().isoformat()
        rows = await self._call(
            "POST",
            self.SCHEDULES_TABLE,
            params={"on_conflict": "relay_id"},
            json=row,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise StoreError(f"Upsert of schedule for relay {schedule.relay_id} returned no rows")
        return Schedule.from_row(rows[0])

    async def delete(self, relay_id: int) -> None:
        await self._call("DELETE", self.SCHEDULES_TABLE, params={"relay_id": f"eq.{relay_id}"})

    async def get_state(self, relay_id: int) -> bool:
        rows = await self._call(
            "GET",
            self.RELAYS_TABLE,
            params={"select": "state", "relay_id": f"eq.{relay_id}"},
        )
        if len(rows) != 1:
            raise StoreError(f"Expected one row for relay {relay_id}, got {len(rows)}")
        return bool(rows[0].get('state'))

    async def set_state(self, relay_id: int, state: bool) -> None:
        await self._call(
            "PATCH",
            self.RELAYS_TABLE,
            params={"relay_id": f"eq.{relay_id}"},
            json={"state": state, "updated_at": datetime.now().astimezone().isoformat()},
        )

    async def append_log(self, relay_id: int, state: bool, timestamp: datetime) -> None:
        await self._call(
            "POST",
            self.LOGS_TABLE,
            json={"relay_id": relay_id, "state": state, "waktu": timestamp.isoformat()},
        )

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
        logger.debug("Store session closed")

    def __enter__(self) -> 'SupabaseStore':
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
