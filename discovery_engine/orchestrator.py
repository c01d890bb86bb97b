"""
Run orchestrator for discovery and extraction runs.

Usage (example from CLI):
    from discovery_engine.orchestrator import DiscoveryRequest, build_orchestrator

    orchestrator = build_orchestrator()
    outcome = await orchestrator.start_discovery(
        DiscoveryRequest(platforms=("wolt",), country="DE", cities=("Berlin", "Munich"))
    )
    print(outcome.run.status if outcome.run else outcome.decision.reason)

Sequence for every run: plan the units of work -> estimate -> admit -> create
the Run (pending) -> execute. Units of work are drained per platform by a
small number of workers, paced by an inter-request delay. Between items each
worker checks the cancellation flag and asks the admission controller whether
the next item still fits the budget. Only invariant violations fail a run;
every other item error is logged on the run and skipped.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from discovery_engine.budget import AdmissionController, BudgetLedgerService, CredentialPool
from discovery_engine.candidates import CandidateRepository, candidate_id
from discovery_engine.config import Settings, get_settings
from discovery_engine.domain.errors import (
    DiscoveryError,
    InvariantViolation,
    PlatformBlockedError,
    RateLimitError,
    TransientFetchError,
)
from discovery_engine.domain.models import (
    AdmissionDecision,
    Candidate,
    CandidateKind,
    CandidateStatus,
    Credential,
    Run,
    RunKind,
    RunStatus,
    SearchResult,
    StrategyOutcome,
    utc_now,
)
from discovery_engine.infrastructure.content_analysis import (
    AnalysisRequest,
    AnthropicContentAnalyzer,
    ContentAnalyzer,
)
from discovery_engine.infrastructure.document_store import RUNS, DocumentStore, build_document_store
from discovery_engine.infrastructure.search_client import HttpSearchEngine, SearchEngine
from discovery_engine.platform_health import PlatformHealth
from discovery_engine.platforms import country_from_url, get_platform, is_venue_url, platform_from_url
from discovery_engine.query_cache import QueryDedupCache, normalize_query
from discovery_engine.run_state import RunTracker
from discovery_engine.scoring import ConfidenceScorer, DishSignals, VenueSignals
from discovery_engine.sessions import ExtractionSessionManager, PageSnapshot
from discovery_engine.strategies import BatchedQuery, StrategyStore, build_batched_queries
from discovery_engine.streaming import RunEventBus
from discovery_engine.utils.logging import bind_run_id, get_logger

log = get_logger(__name__)

UNKNOWN_PLATFORM = "unknown"


@dataclass(frozen=True)
class DiscoveryRequest:
    platforms: Sequence[str]
    country: str
    cities: Sequence[str]
    strategies_per_target: Optional[int] = None
    batch_size: Optional[int] = None
    max_queries: Optional[int] = None


@dataclass(frozen=True)
class ExtractionRequest:
    venue_urls: Sequence[str]
    product_terms: Sequence[str] = ()


@dataclass(frozen=True)
class WorkItem:
    platform: str
    label: str
    query: Optional[BatchedQuery] = None
    url: Optional[str] = None


@dataclass
class RunPlan:
    """An admitted (or refused) run, ready for `RunOrchestrator.execute`."""

    kind: RunKind
    decision: AdmissionDecision
    items: List[WorkItem] = field(default_factory=list)
    tracker: Optional[RunTracker] = None
    skipped_duplicates: int = 0
    product_terms: Sequence[str] = ()

    @property
    def admitted(self) -> bool:
        return self.decision.allowed and self.tracker is not None

    @property
    def run_id(self) -> Optional[str]:
        return self.tracker.run_id if self.tracker is not None else None


@dataclass
class RunOutcome:
    decision: AdmissionDecision
    run: Optional[Run] = None
    candidates: List[Candidate] = field(default_factory=list)

    @property
    def admitted(self) -> bool:
        return self.run is not None


@dataclass
class _RunContext:
    tracker: RunTracker
    health: PlatformHealth
    product_terms: Sequence[str] = ()
    actual_cost: float = 0.0
    started: bool = False
    cancelled: bool = False
    halt_reason: Optional[str] = None
    fatal: Optional[InvariantViolation] = None
    candidates: Dict[str, Candidate] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.tracker.run_id

    @property
    def stopping(self) -> bool:
        return self.fatal is not None or self.cancelled or self.halt_reason is not None


ItemHandler = Callable[[_RunContext, WorkItem], Awaitable[None]]


class RunOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        strategies: StrategyStore,
        query_cache: QueryDedupCache,
        credentials: CredentialPool,
        ledger: BudgetLedgerService,
        admission: AdmissionController,
        search_engine: SearchEngine,
        analyzer: ContentAnalyzer,
        sessions: ExtractionSessionManager,
        scorer: ConfidenceScorer,
        candidates: CandidateRepository,
        events: Optional[RunEventBus] = None,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.strategies = strategies
        self.query_cache = query_cache
        self.credentials = credentials
        self.ledger = ledger
        self.admission = admission
        self.search_engine = search_engine
        self.analyzer = analyzer
        self.sessions = sessions
        self.scorer = scorer
        self.candidates = candidates
        self.events = events or RunEventBus(settings.heartbeat_interval_seconds)
        self.store = store
        self._clock = clock
        self._sleep = sleep
        self._active: Dict[str, _RunContext] = {}
        # Planned runs not yet handed to `execute`; they can already be cancelled.
        self._pending: Dict[str, RunTracker] = {}

    # ------------------------------------------------------------------ helpers

    def _note(self, ctx: _RunContext, message: str, level: str = "info", **extra: Any) -> None:
        """Log to the process logger and to the run's own log ring."""
        getattr(log, level)(message, extra={"run_id": ctx.run_id, **extra})
        ctx.tracker.log(message, level)

    def _new_tracker(self, kind: RunKind, config: Dict[str, Any]) -> RunTracker:
        return RunTracker.create(
            kind,
            config,
            log_ring_size=self.settings.run_log_ring_size,
            store=self.store,
            clock=self._clock,
            on_change=self.events.publish,
        )

    @property
    def _ai_provider(self) -> str:
        return getattr(self.analyzer, "provider", self.settings.ai_provider)

    # ------------------------------------------------------------------ public API

    def cancel(self, run_id: str, requested_by: str = "user") -> bool:
        """
        Request cooperative cancellation; observed at the next item boundary.

        A planned run that has not started executing is cancelled before its
        first unit of work.
        """
        ctx = self._active.get(run_id)
        tracker = ctx.tracker if ctx is not None else self._pending.get(run_id)
        if tracker is None:
            return False
        accepted = tracker.request_cancel(requested_by)
        if accepted:
            log.info(f"[RUN CANCEL REQUESTED] {run_id}", extra={"run_id": run_id, "requested_by": requested_by})
        return accepted

    def get_run(self, run_id: str) -> Optional[Run]:
        ctx = self._active.get(run_id)
        if ctx is not None:
            return ctx.tracker.snapshot()
        if run_id in self._pending:
            return self._pending[run_id].snapshot()
        if self.store is not None:
            document = self.store.get(RUNS, run_id)
            if document is not None:
                return Run.model_validate(document)
        return self.events.latest(run_id)

    def active_runs(self) -> List[str]:
        return sorted(self._active)

    async def start_discovery(self, request: DiscoveryRequest) -> RunOutcome:
        return await self.execute(self.plan_discovery(request))

    async def start_extraction(self, request: ExtractionRequest) -> RunOutcome:
        return await self.execute(self.plan_extraction(request))

    async def close(self) -> None:
        aclose = getattr(self.search_engine, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.sessions.close()

    # ------------------------------------------------------------------ planning

    def plan_discovery(self, request: DiscoveryRequest) -> RunPlan:
        country = request.country.upper()
        per_target = request.strategies_per_target or self.settings.strategies_per_target
        batch_size = request.batch_size or self.settings.query_batch_size

        items: List[WorkItem] = []
        seen: set[str] = set()
        skipped = 0
        for platform in request.platforms:
            get_platform(platform)
            eligible = self.strategies.select_eligible(platform, country, limit=per_target)
            if not eligible:
                log.warning(
                    f"[PLAN] No eligible strategies for {platform}/{country}",
                    extra={"platform": platform, "country": country},
                )
                continue
            for query in build_batched_queries(eligible, request.cities, batch_size):
                key = normalize_query(query.query)
                if key in seen or self.query_cache.should_skip(query.query):
                    skipped += 1
                    continue
                seen.add(key)
                items.append(WorkItem(platform=platform, label=query.query, query=query))

        if request.max_queries is not None:
            items = items[: request.max_queries]

        estimate = self.admission.estimate(
            search_queries=len(items),
            ai_calls=len(items) * self.settings.ai_calls_per_query,
        )
        decision = self.admission.admit(estimate)
        config = {
            "platforms": list(request.platforms),
            "country": country,
            "cities": list(request.cities),
            "strategies_per_target": per_target,
            "batch_size": batch_size,
            "planned_queries": len(items),
            "skipped_duplicates": skipped,
            "estimate": estimate.model_dump(),
        }
        return self._plan(RunKind.DISCOVERY, decision, items, config, skipped_duplicates=skipped)

    def plan_extraction(self, request: ExtractionRequest) -> RunPlan:
        items: List[WorkItem] = []
        seen: set[str] = set()
        for url in request.venue_urls:
            cleaned = url.strip()
            if not cleaned or cleaned.rstrip("/").lower() in seen:
                continue
            seen.add(cleaned.rstrip("/").lower())
            platform = platform_from_url(cleaned) or UNKNOWN_PLATFORM
            items.append(WorkItem(platform=platform, label=cleaned, url=cleaned))

        estimate = self.admission.estimate(ai_calls=len(items) * self.settings.ai_calls_per_venue)
        decision = self.admission.admit(estimate)
        product_terms = list(request.product_terms) or list(self.settings.product_names)
        config = {
            "venue_urls": [item.url for item in items],
            "product_terms": product_terms,
            "estimate": estimate.model_dump(),
        }
        return self._plan(RunKind.EXTRACTION, decision, items, config, product_terms=product_terms)

    def _plan(
        self,
        kind: RunKind,
        decision: AdmissionDecision,
        items: List[WorkItem],
        config: Dict[str, Any],
        *,
        skipped_duplicates: int = 0,
        product_terms: Sequence[str] = (),
    ) -> RunPlan:
        if not decision.allowed:
            log.warning(
                f"[ADMISSION DENIED] {kind.value} run not started",
                extra={"reason": decision.reason, "estimated_cost": decision.estimated_cost},
            )
            return RunPlan(kind=kind, decision=decision, items=items, skipped_duplicates=skipped_duplicates)
        tracker = self._new_tracker(kind, config)
        self._pending[tracker.run_id] = tracker
        log.info(
            f"[RUN CREATED] {tracker.run_id}",
            extra={"run_id": tracker.run_id, "kind": kind.value, "items": len(items)},
        )
        return RunPlan(
            kind=kind,
            decision=decision,
            items=items,
            tracker=tracker,
            skipped_duplicates=skipped_duplicates,
            product_terms=product_terms,
        )

    # ------------------------------------------------------------------ execution

    async def execute(self, plan: RunPlan) -> RunOutcome:
        if not plan.admitted:
            return RunOutcome(decision=plan.decision)
        assert plan.tracker is not None
        with bind_run_id(plan.tracker.run_id):
            return await self._execute(plan)

    async def _execute(self, plan: RunPlan) -> RunOutcome:
        ctx = _RunContext(
            tracker=plan.tracker,
            health=PlatformHealth(self.settings.platform_failure_threshold),
            product_terms=plan.product_terms,
        )
        self._pending.pop(ctx.run_id, None)
        self._active[ctx.run_id] = ctx
        handler: ItemHandler = self._run_query if plan.kind is RunKind.DISCOVERY else self._extract_venue

        ctx.tracker.set_total(len(plan.items))
        if plan.skipped_duplicates:
            ctx.tracker.bump("skipped_duplicates", plan.skipped_duplicates)

        if ctx.tracker.cancel_requested:
            self._note(ctx, "[RUN CANCELLING] cancelled before execution started")
            try:
                run = await self._finalize(ctx)
            finally:
                self._active.pop(ctx.run_id, None)
            return RunOutcome(decision=plan.decision, run=run)

        self._note(ctx, f"[RUN START] {plan.kind.value}: {len(plan.items)} unit(s) of work", items=len(plan.items))

        queues: Dict[str, Deque[WorkItem]] = {}
        for item in plan.items:
            queues.setdefault(item.platform, deque()).append(item)

        workers = [
            asyncio.create_task(self._worker(ctx, platform, queue, handler))
            for platform, queue in queues.items()
            for _ in range(max(self.settings.max_concurrency_per_platform, 1))
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            await self._stop_workers(workers)
            ctx.tracker.request_cancel("shutdown")
            ctx.cancelled = True
            await self._finalize(ctx)
            raise
        except Exception as exc:  # noqa: BLE001 - an unexpected worker error fails the run
            await self._stop_workers(workers)
            log.exception(f"[RUN ERROR] {ctx.run_id}", extra={"run_id": ctx.run_id})
            if ctx.fatal is None:
                ctx.fatal = InvariantViolation(
                    f"Unexpected {type(exc).__name__} while executing run: {exc}",
                    {"run_id": ctx.run_id, "error_type": type(exc).__name__},
                )
        finally:
            self._active.pop(ctx.run_id, None)

        run = await self._finalize(ctx)
        return RunOutcome(decision=plan.decision, run=run, candidates=list(ctx.candidates.values()))

    @staticmethod
    async def _stop_workers(workers: List["asyncio.Task[None]"]) -> None:
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _finalize(self, ctx: _RunContext) -> Run:
        tracker = ctx.tracker
        if tracker.cancel_requested:
            ctx.cancelled = True

        try:
            committed = await asyncio.to_thread(self.admission.commit, ctx.run_id, ctx.actual_cost)
            if not committed:
                raise InvariantViolation(
                    f"Cost commit attempted twice for run {ctx.run_id}",
                    {"run_id": ctx.run_id, "actual_cost": ctx.actual_cost},
                )
        except InvariantViolation as exc:
            if ctx.fatal is None:
                ctx.fatal = exc
            log.error(f"[INVARIANT VIOLATION] {exc}", extra={"run_id": ctx.run_id, **exc.context})
        except Exception as exc:  # noqa: BLE001 - the run still reaches a terminal state
            log.exception(f"[BUDGET COMMIT FAILED] {ctx.run_id}", extra={"run_id": ctx.run_id})
            if ctx.fatal is None:
                ctx.fatal = InvariantViolation(
                    f"Cost commit failed for run {ctx.run_id}: {exc}",
                    {"run_id": ctx.run_id, "actual_cost": ctx.actual_cost},
                )

        error: Optional[str] = None
        if ctx.fatal is not None:
            status, error = RunStatus.FAILED, str(ctx.fatal)
        elif ctx.cancelled:
            status = RunStatus.CANCELLED
        elif ctx.halt_reason is not None:
            status, error = RunStatus.PARTIAL, ctx.halt_reason
        else:
            status = RunStatus.COMPLETED

        # A run with no units of work completes straight from pending.
        if tracker.status is RunStatus.PENDING and (
            status is RunStatus.PARTIAL or (status is RunStatus.COMPLETED and tracker.snapshot().progress.total)
        ):
            tracker.start()
        run = tracker.finish(status, error)

        degraded = ctx.health.degraded()
        summary = (
            f"[RUN {status.value.upper()}] {run.progress.current}/{run.progress.total} item(s), "
            f"{len(ctx.candidates)} candidate(s), ${ctx.actual_cost:.4f} spent"
        )
        if degraded:
            summary += f", degraded: {', '.join(sorted(degraded))}"
        level = "error" if status is RunStatus.FAILED else "info"
        getattr(log, level)(summary, extra={"run_id": ctx.run_id, "status": status.value})
        tracker.log(summary, level)
        return tracker.snapshot()

    async def _pace(self, ctx: _RunContext) -> None:
        """Inter-request delay, polling the cancellation flag so cancel latency stays bounded."""
        remaining = self.settings.request_delay_seconds
        step = max(self.settings.cancellation_poll_seconds, 0.01)
        while remaining > 0 and not ctx.tracker.cancel_requested and not ctx.stopping:
            await self._sleep(min(step, remaining))
            remaining -= step

    def _next_item_cost(self, item: WorkItem) -> float:
        if item.query is not None:
            paid = self.credentials.free_capacity() == 0
            search = self.admission.paid_search_cost if paid else self.admission.free_search_cost
            return search + self.settings.ai_calls_per_query * self.admission.ai_call_cost
        return self.admission.ai_call_cost

    async def _worker(self, ctx: _RunContext, platform: str, queue: Deque[WorkItem], handler: ItemHandler) -> None:
        tracker = ctx.tracker
        while queue:
            if tracker.cancel_requested:
                if not ctx.cancelled:
                    ctx.cancelled = True
                    self._note(ctx, "[RUN CANCELLING] cancellation observed between items")
                return
            if ctx.stopping:
                return
            if ctx.health.is_degraded(platform):
                skipped = len(queue)
                queue.clear()
                tracker.bump("skipped_degraded", skipped)
                self._note(ctx, f"Skipping {skipped} item(s) for degraded platform {platform}", "warning",
                           platform=platform)
                return

            item = queue.popleft()
            decision = await asyncio.to_thread(self.admission.admit_continuation, self._next_item_cost(item))
            if not decision.allowed:
                if ctx.halt_reason is None:
                    ctx.halt_reason = decision.reason or "budget exhausted"
                    self._note(ctx, f"[BUDGET HALT] {ctx.halt_reason}", "warning")
                return

            if not ctx.started:
                ctx.started = True
                tracker.start()

            await self._process(ctx, item, handler)
            tracker.advance()
            if queue:
                await self._pace(ctx)

    async def _process(self, ctx: _RunContext, item: WorkItem, handler: ItemHandler) -> None:
        try:
            await asyncio.wait_for(handler(ctx, item), timeout=self.settings.item_timeout_seconds)
            ctx.health.record_success(item.platform)
        except asyncio.TimeoutError:
            ctx.tracker.bump("timeouts")
            self._note(ctx, f"Timed out: {item.label}", "warning", platform=item.platform)
            self._platform_failure(ctx, item.platform, "timeout")
        except PlatformBlockedError as exc:
            ctx.tracker.bump("blocked")
            if ctx.health.mark_degraded(item.platform, str(exc)):
                self._note(ctx, f"[PLATFORM DEGRADED] {item.platform}: {exc}", "warning", platform=item.platform)
        except InvariantViolation as exc:
            ctx.fatal = exc
            self._note(ctx, f"[INVARIANT VIOLATION] {exc}", "error", **exc.context)
        except DiscoveryError as exc:
            ctx.tracker.bump("failed_items")
            self._note(ctx, f"Skipped {item.label}: {exc}", "warning", platform=item.platform)
            self._platform_failure(ctx, item.platform, str(exc))
        except Exception as exc:  # noqa: BLE001 - one bad item never takes the run down
            ctx.tracker.bump("failed_items")
            log.exception(f"[ITEM FAILED] {item.label}", extra={"run_id": ctx.run_id, "platform": item.platform})
            ctx.tracker.log(f"Skipped {item.label}: {exc}", "error")
            self._platform_failure(ctx, item.platform, str(exc))

    def _platform_failure(self, ctx: _RunContext, platform: str, reason: str) -> None:
        if ctx.health.record_failure(platform, reason):
            self._note(ctx, f"[PLATFORM DEGRADED] {platform}: repeated failures", "warning", platform=platform)

    # ------------------------------------------------------------------ cost accounting

    async def _charge(
        self,
        ctx: _RunContext,
        *,
        free_searches: int = 0,
        paid_searches: int = 0,
        ai_calls: int = 0,
        search_cost: float = 0.0,
        ai_cost: float = 0.0,
    ) -> None:
        event_id = f"{ctx.run_id}:{uuid.uuid4().hex}"
        await asyncio.to_thread(
            self.ledger.record_usage,
            event_id,
            run_id=ctx.run_id,
            free_searches=free_searches,
            paid_searches=paid_searches,
            ai_calls={self._ai_provider: ai_calls} if ai_calls else None,
            search_cost=search_cost,
            ai_cost=ai_cost,
        )
        cost = search_cost + ai_cost
        ctx.actual_cost = round(ctx.actual_cost + cost, 6)
        ctx.tracker.add_costs(search_queries=free_searches + paid_searches, ai_calls=ai_calls, spend=cost)

    # ------------------------------------------------------------------ discovery

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(self.settings.item_max_retries, 1)),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_seconds, max=30),
            retry=retry_if_exception_type(TransientFetchError),
            reraise=True,
        )

    async def _search_once(self, query: BatchedQuery, credential: Credential) -> List[SearchResult]:
        results: List[SearchResult] = []
        async for attempt in self._retrying():
            with attempt:
                results = await self.search_engine.search(query.query, credential, platform=query.platform)
        return results

    async def _search(self, ctx: _RunContext, query: BatchedQuery) -> List[SearchResult]:
        """Search with credential rotation: a rate-limited slot is never retried, it is replaced."""
        for _ in range(len(self.credentials) + 1):
            credential = await asyncio.to_thread(self.credentials.acquire, "search")
            try:
                results = await self._search_once(query, credential)
            except RateLimitError:
                if credential.is_paid:
                    raise
                await asyncio.to_thread(self.credentials.report_exhausted, credential.id)
                self._note(ctx, f"[CREDENTIAL ROTATED] {credential.id} rate limited", "warning",
                           credential_id=credential.id)
                continue
            if credential.is_paid:
                await self._charge(ctx, paid_searches=1, search_cost=self.admission.paid_search_cost)
            else:
                await self._charge(ctx, free_searches=1, search_cost=self.admission.free_search_cost)
            return results
        raise RateLimitError("pool", "every search credential was rate limited")

    async def _run_query(self, ctx: _RunContext, item: WorkItem) -> None:
        query = item.query
        assert query is not None
        if self.query_cache.should_skip(query.query):
            ctx.tracker.bump("skipped_duplicates")
            return

        results = await self._search(ctx, query)
        await asyncio.to_thread(self.query_cache.record, query.query, bool(results))
        strategy = self.strategies.get(query.strategy_id)
        now = self._clock()

        passing = rejected = written = 0
        for result in results:
            platform = platform_from_url(result.url)
            if platform != query.platform or not is_venue_url(platform, result.url):
                continue
            confidence = self.scorer.score_venue(
                VenueSignals(
                    url=result.url,
                    platform=platform,
                    name=result.title,
                    snippet=result.snippet,
                    strategy_success_rate=strategy.success_rate if strategy is not None else None,
                )
            )
            candidate = Candidate(
                id=candidate_id(CandidateKind.VENUE, result.url),
                kind=CandidateKind.VENUE,
                url=result.url,
                platform=platform,
                country=country_from_url(result.url) or query.country,
                name=result.title or None,
                description=result.snippet or None,
                strategy_id=query.strategy_id,
                run_id=ctx.run_id,
                confidence_score=confidence.score,
                confidence_factors=confidence.factors,
                discovered_at=now,
                last_seen_at=now,
            )
            existing = await asyncio.to_thread(self.candidates.get, candidate.id)
            if existing is not None and existing.status is CandidateStatus.REJECTED:
                rejected += 1
                continue
            if confidence.score >= self.settings.candidate_min_confidence:
                passing += 1
            if await asyncio.to_thread(self.candidates.save, candidate):
                written += 1
                ctx.candidates[candidate.id] = candidate

        if passing:
            outcome = StrategyOutcome.SUCCESS
        elif rejected:
            outcome = StrategyOutcome.FALSE_POSITIVE
        else:
            outcome = StrategyOutcome.NO_RESULT
        if strategy is not None:
            await asyncio.to_thread(self.strategies.record_outcome, strategy.id, outcome)

        ctx.tracker.bump("venues_found", written)
        self._note(
            ctx,
            f"{query.query!r}: {len(results)} result(s), {written} venue candidate(s)",
            strategy_id=query.strategy_id,
            outcome=outcome.value,
        )

    # ------------------------------------------------------------------ extraction

    async def _fetch(self, url: str) -> PageSnapshot:
        snapshot: Optional[PageSnapshot] = None
        async for attempt in self._retrying():
            with attempt:
                snapshot = await self.sessions.with_session(url, lambda session: session.fetch())
        assert snapshot is not None
        return snapshot

    async def _extract_venue(self, ctx: _RunContext, item: WorkItem) -> None:
        url = item.url
        assert url is not None
        snapshot = await self._fetch(url)
        if not snapshot.text.strip():
            self._note(ctx, f"Empty page, zero dishes: {url}", "warning", url=url)
            return

        request = AnalysisRequest(
            venue_url=url,
            platform=item.platform,
            country=country_from_url(url) or "",
            page_text=snapshot.text,
            product_terms=list(ctx.product_terms),
        )
        result = await self.analyzer.analyze(request)
        await self._charge(ctx, ai_calls=1, ai_cost=self.admission.ai_call_cost)
        if result.is_empty:
            self._note(ctx, f"Analysis returned nothing, zero dishes: {url}", "warning", url=url)
            return

        now = self._clock()
        signal_items = result.signals.get("menu_item_count", 0)
        venue_confidence = self.scorer.score_venue(
            VenueSignals(
                url=url,
                platform=item.platform if item.platform != UNKNOWN_PLATFORM else None,
                name=result.name or "",
                description=result.description or "",
                menu_item_count=max(len(result.dishes), signal_items if isinstance(signal_items, int) else 0),
                dish_names=[dish.name for dish in result.dishes],
            )
        )
        venue = Candidate(
            id=candidate_id(CandidateKind.VENUE, url),
            kind=CandidateKind.VENUE,
            url=url,
            platform=item.platform,
            country=request.country or None,
            name=result.name,
            description=result.description,
            price=result.price,
            run_id=ctx.run_id,
            confidence_score=venue_confidence.score,
            confidence_factors=venue_confidence.factors,
            discovered_at=now,
            last_seen_at=now,
        )
        if await asyncio.to_thread(self.candidates.save, venue):
            ctx.candidates[venue.id] = venue

        dishes = 0
        for dish in result.dishes:
            confidence = self.scorer.score_dish(
                DishSignals(
                    name=dish.name,
                    description=dish.description,
                    price=dish.price,
                    product_guess=dish.product_guess,
                )
            )
            candidate = Candidate(
                id=candidate_id(CandidateKind.DISH, url, dish.name),
                kind=CandidateKind.DISH,
                url=url,
                platform=item.platform,
                country=venue.country,
                name=dish.name,
                description=dish.description or None,
                price=dish.price,
                venue_id=venue.id,
                run_id=ctx.run_id,
                confidence_score=confidence.score,
                confidence_factors=confidence.factors,
                discovered_at=now,
                last_seen_at=now,
            )
            if await asyncio.to_thread(self.candidates.save, candidate):
                dishes += 1
                ctx.candidates[candidate.id] = candidate

        ctx.tracker.bump("dishes_found", dishes)
        self._note(ctx, f"{url}: {dishes} dish candidate(s)", url=url)


def build_orchestrator(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    *,
    search_engine: Optional[SearchEngine] = None,
    analyzer: Optional[ContentAnalyzer] = None,
    sessions: Optional[ExtractionSessionManager] = None,
    clock: Callable[[], datetime] = utc_now,
) -> RunOrchestrator:
    """Wire every component from settings; collaborators can be swapped for tests."""
    settings = settings or get_settings()
    store = store if store is not None else build_document_store(settings)

    credentials = CredentialPool.from_settings(settings, store=store, clock=clock)
    ledger = BudgetLedgerService(store, clock=clock)
    admission = AdmissionController.from_settings(settings, ledger, free_capacity=credentials.free_capacity)
    return RunOrchestrator(
        settings=settings,
        strategies=StrategyStore.from_settings(settings, store, clock=clock),
        query_cache=QueryDedupCache(
            positive_ttl=timedelta(hours=settings.dedup_positive_ttl_hours),
            negative_ttl=timedelta(days=settings.dedup_negative_ttl_days),
            store=store,
            clock=clock,
        ),
        credentials=credentials,
        ledger=ledger,
        admission=admission,
        search_engine=search_engine or HttpSearchEngine.from_settings(settings),
        analyzer=analyzer or AnthropicContentAnalyzer.from_settings(settings),
        sessions=sessions or ExtractionSessionManager.from_settings(settings),
        scorer=ConfidenceScorer.from_settings(settings),
        candidates=CandidateRepository(store, clock=clock),
        events=RunEventBus(settings.heartbeat_interval_seconds),
        store=store,
        clock=clock,
    )


__all__ = [
    "DiscoveryRequest",
    "ExtractionRequest",
    "RunOrchestrator",
    "RunOutcome",
    "RunPlan",
    "WorkItem",
    "build_orchestrator",
]
