"""
Run event streaming for observers.

Subscribers receive progress snapshots as a run changes, a heartbeat when the
run has been quiet for `heartbeat_interval` seconds (so "still alive" can be
told apart from "connection lost"), and one terminal event, after which the
subscription ends. Subscribing to a run that already finished yields its
terminal event immediately.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import AsyncIterator, Dict, List, Literal, Set

from pydantic import BaseModel, Field

from discovery_engine.domain.models import LogEntry, Run, RunCosts, RunProgress, RunStatus, utc_now
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

EventType = Literal["progress", "heartbeat", "terminal"]

# Log lines carried on each event.
EVENT_LOG_TAIL = 20


class RunEvent(BaseModel):
    type: EventType
    run_id: str
    status: RunStatus
    progress: RunProgress = Field(default_factory=RunProgress)
    costs: RunCosts = Field(default_factory=RunCosts)
    logs: List[LogEntry] = Field(default_factory=list)
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_run(cls, run: Run, event_type: EventType) -> "RunEvent":
        return cls(
            type=event_type,
            run_id=run.id,
            status=run.status,
            progress=run.progress,
            costs=run.costs,
            logs=run.logs[-EVENT_LOG_TAIL:],
            error=run.error,
        )


class RunEventBus:
    """In-process fan-out of run snapshots; publish from the event loop thread."""

    def __init__(self, heartbeat_interval: float = 15.0) -> None:
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: Dict[str, Set[asyncio.Queue[RunEvent]]] = {}
        self._latest: Dict[str, Run] = {}
        self._terminal: Dict[str, RunEvent] = {}

    def publish(self, run: Run) -> None:
        if run.id in self._terminal:
            # Final log flush after the terminal event; keep the stored snapshot fresh.
            self._latest[run.id] = run
            return
        self._latest[run.id] = run
        event = RunEvent.from_run(run, "terminal" if run.status.is_terminal else "progress")
        if event.type == "terminal":
            self._terminal[run.id] = event
        for queue in list(self._subscribers.get(run.id, ())):
            queue.put_nowait(event)

    def latest(self, run_id: str) -> Run | None:
        return self._latest.get(run_id)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def forget(self, run_id: str) -> None:
        self._latest.pop(run_id, None)
        self._terminal.pop(run_id, None)

    async def subscribe(self, run_id: str) -> AsyncIterator[RunEvent]:
        terminal = self._terminal.get(run_id)
        if terminal is not None:
            yield terminal
            return

        queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        self._subscribers.setdefault(run_id, set()).add(queue)
        try:
            current = self._latest.get(run_id)
            if current is not None:
                yield RunEvent.from_run(current, "progress")
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    current = self._latest.get(run_id)
                    if current is not None:
                        yield RunEvent.from_run(current, "heartbeat")
                    else:
                        yield RunEvent(type="heartbeat", run_id=run_id, status=RunStatus.PENDING)
                    continue
                yield event
                if event.type == "terminal":
                    return
        finally:
            subscribers = self._subscribers.get(run_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[run_id]


__all__ = ["EVENT_LOG_TAIL", "RunEvent", "RunEventBus"]
