"""
Run state machine.

    pending -> running -> completed | failed | partial | cancelled
    pending -> failed | cancelled
    pending -> completed           (only a run with no units of work)

`RunTracker` is the only writer of a `Run`. Once a run is terminal, progress
and cost updates are ignored and exactly one more log line may be appended
(the final flush). Every accepted change is persisted and handed to the
`on_change` listener, which the orchestrator wires to the event bus.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, FrozenSet, Mapping, Optional

from discovery_engine.domain.errors import InvalidTransition
from discovery_engine.domain.models import LogEntry, Run, RunKind, RunProgress, RunStatus, utc_now
from discovery_engine.infrastructure.document_store import RUNS, DocumentStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PARTIAL, RunStatus.CANCELLED}
    ),
}

RunListener = Callable[[Run], None]


def compute_progress(current: int, total: int, elapsed_seconds: float) -> RunProgress:
    """Percentage plus an ETA extrapolated from the average time per item so far."""
    percentage = round(current / total * 100, 2) if total else 0.0
    eta = None
    if current > 0 and total > current:
        eta = round(elapsed_seconds / current * (total - current), 2)
    elif total and current >= total:
        eta = 0.0
    return RunProgress(current=current, total=total, percentage=min(percentage, 100.0), eta_seconds=eta)


class RunTracker:
    def __init__(
        self,
        run: Run,
        *,
        log_ring_size: int = 200,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
        on_change: Optional[RunListener] = None,
    ) -> None:
        self._run = run
        self._ring: Deque[LogEntry] = deque(run.logs, maxlen=log_ring_size)
        self._store = store
        self._clock = clock
        self._on_change = on_change
        self._lock = threading.Lock()
        self._final_line_written = False
        self._persist()

    @classmethod
    def create(
        cls,
        kind: RunKind,
        config: Optional[Mapping[str, object]] = None,
        *,
        log_ring_size: int = 200,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
        on_change: Optional[RunListener] = None,
    ) -> "RunTracker":
        run = Run(
            id=f"{kind.value}-{uuid.uuid4().hex[:12]}",
            kind=kind,
            config=dict(config or {}),
            started_at=clock(),
        )
        return cls(run, log_ring_size=log_ring_size, store=store, clock=clock, on_change=on_change)

    # ------------------------------------------------------------------ reads

    @property
    def run_id(self) -> str:
        return self._run.id

    @property
    def status(self) -> RunStatus:
        return self._run.status

    @property
    def is_terminal(self) -> bool:
        return self._run.status.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._run.cancel_requested

    def snapshot(self) -> Run:
        with self._lock:
            return self._run.model_copy(deep=True)

    # ------------------------------------------------------------------ internals

    def _persist(self) -> Run:
        self._run.logs = list(self._ring)
        snapshot = self._run.model_copy(deep=True)
        if self._store is not None:
            document = snapshot.model_dump(mode="json")
            self._store.put(RUNS, snapshot.id, document)
        return snapshot

    def _changed(self, snapshot: Run) -> None:
        if self._on_change is not None:
            self._on_change(snapshot)

    # ------------------------------------------------------------------ transitions

    def transition(self, target: RunStatus, error: Optional[str] = None) -> Run:
        with self._lock:
            current = self._run.status
            allowed = ALLOWED_TRANSITIONS.get(current, frozenset())
            if current is RunStatus.PENDING and self._run.progress.total == 0:
                allowed = allowed | {RunStatus.COMPLETED}
            if target not in allowed:
                raise InvalidTransition(f"Run {self._run.id}: {current.value} -> {target.value} is not allowed")
            self._run.status = target
            now = self._clock()
            if target.is_terminal:
                self._run.completed_at = now
                if error:
                    self._run.error = error
                if target is RunStatus.CANCELLED:
                    self._run.cancelled_at = now
            snapshot = self._persist()
        log.info(
            f"[RUN {target.value.upper()}] {snapshot.id}",
            extra={"run_id": snapshot.id, "from_status": current.value, "error": error},
        )
        self._changed(snapshot)
        return snapshot

    def start(self) -> Run:
        return self.transition(RunStatus.RUNNING)

    def finish(self, status: RunStatus, error: Optional[str] = None) -> Run:
        if not status.is_terminal:
            raise InvalidTransition(f"{status.value} is not a terminal status")
        return self.transition(status, error)

    def request_cancel(self, requested_by: str = "user") -> bool:
        """Set the cooperative cancellation flag. False if the run already ended."""
        with self._lock:
            if self._run.status.is_terminal:
                return False
            self._run.cancel_requested = True
            self._run.cancelled_by = requested_by
            snapshot = self._persist()
        self._changed(snapshot)
        return True

    # ------------------------------------------------------------------ mutations

    def set_total(self, total: int) -> bool:
        with self._lock:
            if self._run.status.is_terminal:
                return False
            elapsed = (self._clock() - self._run.started_at).total_seconds()
            self._run.progress = compute_progress(self._run.progress.current, total, elapsed)
            snapshot = self._persist()
        self._changed(snapshot)
        return True

    def advance(self, items: int = 1) -> bool:
        with self._lock:
            if self._run.status.is_terminal:
                return False
            elapsed = (self._clock() - self._run.started_at).total_seconds()
            current = self._run.progress.current + items
            self._run.progress = compute_progress(current, self._run.progress.total, elapsed)
            snapshot = self._persist()
        self._changed(snapshot)
        return True

    def add_costs(self, search_queries: int = 0, ai_calls: int = 0, spend: float = 0.0) -> bool:
        with self._lock:
            if self._run.status.is_terminal:
                return False
            costs = self._run.costs
            costs.search_queries += search_queries
            costs.ai_calls += ai_calls
            costs.estimated_spend = round(costs.estimated_spend + spend, 6)
            self._persist()
        return True

    def bump(self, stat: str, amount: int = 1) -> bool:
        with self._lock:
            if self._run.status.is_terminal:
                return False
            self._run.stats[stat] = self._run.stats.get(stat, 0) + amount
        return True

    def log(self, message: str, level: str = "info") -> bool:
        """Append to the bounded log ring; after termination only one final line is accepted."""
        with self._lock:
            if self._run.status.is_terminal:
                if self._final_line_written:
                    return False
                self._final_line_written = True
            self._ring.append(LogEntry(timestamp=self._clock(), level=level, message=message))
            snapshot = self._persist()
        self._changed(snapshot)
        return True


__all__ = ["ALLOWED_TRANSITIONS", "RunTracker", "compute_progress"]
