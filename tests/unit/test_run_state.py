from __future__ import annotations

import pytest

from discovery_engine.domain.errors import InvalidTransition
from discovery_engine.domain.models import Run, RunKind, RunStatus
from discovery_engine.infrastructure.document_store import RUNS
from discovery_engine.platform_health import PlatformHealth
from discovery_engine.run_state import RunTracker, compute_progress

RING_SIZE = 3


def _tracker(clock, store=None, listener=None) -> RunTracker:
    return RunTracker.create(
        RunKind.DISCOVERY,
        {"platforms": ["wolt"]},
        log_ring_size=RING_SIZE,
        store=store,
        clock=clock,
        on_change=listener,
    )


def test_compute_progress_extrapolates_eta() -> None:
    assert compute_progress(0, 10, 0.0).eta_seconds is None
    progress = compute_progress(2, 10, 20.0)
    assert progress.percentage == 20.0
    assert progress.eta_seconds == 80.0
    assert compute_progress(10, 10, 50.0).eta_seconds == 0.0
    assert compute_progress(0, 0, 0.0).percentage == 0.0


def test_new_run_is_pending_and_persisted(clock, memory_store) -> None:
    tracker = _tracker(clock, memory_store)
    assert tracker.status is RunStatus.PENDING
    assert tracker.run_id.startswith("discovery-")
    stored = Run.model_validate(memory_store.get(RUNS, tracker.run_id))
    assert stored.config == {"platforms": ["wolt"]}
    assert stored.started_at == clock()


def test_happy_path_transitions(clock) -> None:
    tracker = _tracker(clock)
    tracker.start()
    clock.advance(seconds=30)
    run = tracker.finish(RunStatus.COMPLETED)
    assert run.status is RunStatus.COMPLETED
    assert run.completed_at == clock()


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ([], RunStatus.PARTIAL),
        ([RunStatus.RUNNING, RunStatus.COMPLETED], RunStatus.RUNNING),
        ([RunStatus.CANCELLED], RunStatus.FAILED),
    ],
)
def test_disallowed_transitions_raise(clock, path, target) -> None:
    tracker = _tracker(clock)
    for status in path:
        tracker.transition(status)
    with pytest.raises(InvalidTransition):
        tracker.transition(target)


def test_pending_run_completes_directly_only_without_work(clock) -> None:
    empty = _tracker(clock)
    assert empty.finish(RunStatus.COMPLETED).status is RunStatus.COMPLETED

    planned = _tracker(clock)
    planned.set_total(2)
    with pytest.raises(InvalidTransition):
        planned.finish(RunStatus.COMPLETED)


def test_finish_requires_terminal_status(clock) -> None:
    tracker = _tracker(clock)
    tracker.start()
    with pytest.raises(InvalidTransition):
        tracker.finish(RunStatus.RUNNING)


def test_pending_run_can_fail_or_cancel_directly(clock) -> None:
    assert _tracker(clock).finish(RunStatus.FAILED, "boom").error == "boom"
    cancelled = _tracker(clock).finish(RunStatus.CANCELLED)
    assert cancelled.cancelled_at == clock()


def test_terminal_run_ignores_updates_and_accepts_one_final_line(clock) -> None:
    tracker = _tracker(clock)
    tracker.start()
    tracker.set_total(4)
    tracker.advance()
    tracker.finish(RunStatus.PARTIAL)

    assert tracker.advance() is False
    assert tracker.add_costs(search_queries=1, spend=1.0) is False
    assert tracker.bump("venues_found") is False
    assert tracker.request_cancel() is False
    assert tracker.log("[RUN PARTIAL] summary") is True
    assert tracker.log("one more") is False

    run = tracker.snapshot()
    assert run.progress.current == 1
    assert run.costs.estimated_spend == 0.0
    assert run.logs[-1].message == "[RUN PARTIAL] summary"


def test_log_ring_keeps_most_recent_lines(clock, memory_store) -> None:
    tracker = _tracker(clock, memory_store)
    for index in range(5):
        tracker.log(f"line {index}")
    assert [entry.message for entry in tracker.snapshot().logs] == ["line 2", "line 3", "line 4"]
    assert len(memory_store.get(RUNS, tracker.run_id)["logs"]) == RING_SIZE


def test_cancel_request_sets_flag_and_notifies(clock) -> None:
    seen = []
    tracker = _tracker(clock, listener=seen.append)
    tracker.start()
    assert tracker.request_cancel("operator") is True
    assert tracker.cancel_requested
    assert seen[-1].cancelled_by == "operator"
    assert seen[-1].status is RunStatus.RUNNING


def test_progress_tracks_elapsed_time(clock) -> None:
    tracker = _tracker(clock)
    tracker.start()
    tracker.set_total(4)
    clock.advance(seconds=10)
    tracker.advance()
    tracker.add_costs(search_queries=1, ai_calls=2, spend=0.011)
    run = tracker.snapshot()
    assert run.progress.percentage == 25.0
    assert run.progress.eta_seconds == 30.0
    assert (run.costs.search_queries, run.costs.ai_calls) == (1, 2)


def test_platform_degrades_after_consecutive_failures() -> None:
    health = PlatformHealth(failure_threshold=2)
    assert health.record_failure("wolt", "timeout") is False
    health.record_success("wolt")
    assert health.record_failure("wolt", "timeout") is False
    assert health.record_failure("wolt", "timeout") is True
    assert health.is_degraded("wolt")
    assert health.record_failure("wolt", "timeout") is False
    assert not health.is_degraded("uber_eats")


def test_blocked_platform_is_degraded_once() -> None:
    health = PlatformHealth()
    assert health.mark_degraded("wolt", "403") is True
    assert health.mark_degraded("wolt", "403 again") is False
    assert health.degraded() == {"wolt": "403"}
