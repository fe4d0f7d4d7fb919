"""
Process-local runtime state shared by the MCP and REST surfaces.

1) Write lanes: memory writes are serialized per scope and bounded globally,
   which keeps SQLite from thrashing on "database is locked".
2) Gate decision tracker: a rolling window of permission decisions for the
   health endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from config import env_int, load_config

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_lane(lane: Optional[str]) -> str:
    value = (lane or "").strip()
    return value if value else "default"


class WriteLaneCoordinator:
    """
    Two-layer write coordination:
    - Scope lane: serial writes within one (user, project) scope.
    - Global lane: bounded write concurrency across all scopes.

    With RUNTIME_WRITE_LANE_QUEUE disabled the task runs immediately.
    """

    def __init__(self) -> None:
        self._enabled = load_config().mcp.write_lane_queue
        self._global_concurrency = env_int(
            "RUNTIME_WRITE_GLOBAL_CONCURRENCY", 1, minimum=1
        )
        self._wait_warn_ms = env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1)
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._lane_locks: Dict[str, asyncio.Lock] = {}
        self._lane_waiting: Dict[str, int] = {}
        self._global_waiting = 0
        self._global_active = 0
        self._completed: Counter = Counter()
        self._guard = asyncio.Lock()

    async def _enter_lane(self, lane: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._lane_locks.get(lane)
            if lock is None:
                lock = asyncio.Lock()
                self._lane_locks[lane] = lock
            self._lane_waiting[lane] = self._lane_waiting.get(lane, 0) + 1
            return lock

    async def _leave_lane(self, lane: str, lock: asyncio.Lock, acquired: bool) -> None:
        # Idle lanes are dropped so one lock per scope ever written does not pile up.
        async with self._guard:
            if not acquired:
                self._lane_waiting[lane] = max(0, self._lane_waiting.get(lane, 1) - 1)
            if self._lane_waiting.get(lane, 0) == 0 and not lock.locked():
                self._lane_waiting.pop(lane, None)
                if self._lane_locks.get(lane) is lock:
                    del self._lane_locks[lane]

    async def run_write(
        self,
        *,
        lane: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        if not self._enabled:
            return await task()

        lane = _normalize_lane(lane)
        wait_start = time.monotonic()
        lane_lock = await self._enter_lane(lane)
        acquired = False

        try:
            async with lane_lock:
                async with self._guard:
                    self._lane_waiting[lane] = max(0, self._lane_waiting.get(lane, 1) - 1)
                    self._global_waiting += 1
                acquired = True

                await self._global_sem.acquire()
                waited_ms = int((time.monotonic() - wait_start) * 1000)
                async with self._guard:
                    self._global_waiting = max(0, self._global_waiting - 1)
                    self._global_active += 1

                if waited_ms >= self._wait_warn_ms:
                    logger.warning(
                        "Write %s on lane %r waited %d ms", operation, lane, waited_ms
                    )
                try:
                    return await task()
                finally:
                    async with self._guard:
                        self._global_active = max(0, self._global_active - 1)
                        self._completed[operation] += 1
                    self._global_sem.release()
        finally:
            await self._leave_lane(lane, lane_lock, acquired)

    def lane_count(self) -> int:
        return len(self._lane_locks)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            busy_lanes = {
                lane: waiting
                for lane, waiting in self._lane_waiting.items()
                if waiting > 0
            }
            return {
                "enabled": self._enabled,
                "global_concurrency": self._global_concurrency,
                "global_active": self._global_active,
                "global_waiting": self._global_waiting,
                "lane_waiting_count": sum(busy_lanes.values()),
                "lane_waiting_lanes": len(busy_lanes),
                "max_lane_waiting": max(busy_lanes.values(), default=0),
                "wait_warn_ms": self._wait_warn_ms,
                "completed_writes": dict(self._completed),
            }


@dataclass
class GateDecisionEvent:
    timestamp: str
    tool_name: str
    connector: Optional[str]
    allowed: bool
    is_vacation_mode: bool


class GateDecisionTracker:
    """Rolling window of permission-gate outcomes."""

    def __init__(self) -> None:
        self._max_events = env_int("RUNTIME_GATE_EVENT_LIMIT", 300, minimum=50)
        self._events: Deque[GateDecisionEvent] = deque(maxlen=self._max_events)
        self._guard = asyncio.Lock()

    async def record_event(
        self,
        *,
        tool_name: str,
        connector: Optional[str],
        allowed: bool,
        is_vacation_mode: bool = False,
    ) -> None:
        event = GateDecisionEvent(
            timestamp=_utc_iso_now(),
            tool_name=(tool_name or "unknown").strip() or "unknown",
            connector=connector,
            allowed=bool(allowed),
            is_vacation_mode=bool(is_vacation_mode),
        )
        async with self._guard:
            self._events.append(event)

    async def summary(self) -> Dict[str, Any]:
        async with self._guard:
            snapshot = list(self._events)

        denied = [item for item in snapshot if not item.allowed]
        return {
            "window_size": self._max_events,
            "total_events": len(snapshot),
            "denied_events": len(denied),
            "vacation_denials": sum(1 for item in denied if item.is_vacation_mode),
            "connector_breakdown": dict(
                Counter(item.connector for item in snapshot if item.connector)
            ),
            "top_denied_tools": [
                {"tool": tool, "count": count}
                for tool, count in Counter(item.tool_name for item in denied).most_common(5)
            ],
            "last_event_at": snapshot[-1].timestamp if snapshot else None,
        }


class RuntimeState:
    def __init__(self) -> None:
        self.write_lanes = WriteLaneCoordinator()
        self.gate_tracker = GateDecisionTracker()

    async def status(self) -> Dict[str, Any]:
        return {
            "write_lanes": await self.write_lanes.status(),
            "gate_decisions": await self.gate_tracker.summary(),
        }


runtime_state = RuntimeState()
