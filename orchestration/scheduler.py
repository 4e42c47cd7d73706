import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from config.settings import TradingSettings
from core.types import Market, Signal, broker_for_market
from execution.pipeline import OutcomeStatus, SignalOutcome
from monitoring.async_utils import run_periodic, run_tasks_with_cleanup
from monitoring.metrics import metrics
from monitoring.notifications import NotificationEvent, NotificationLevel, minute_key
from orchestration.market_hours import is_market_open
from risk.guards import utcnow


logger = logging.getLogger(__name__)


@dataclass
class MarketLoopState:
    running: bool = False
    runs: int = 0
    skipped: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class TickResult:
    market: Market
    status: str
    reasons: List[str] = field(default_factory=list)
    outcomes: List[SignalOutcome] = field(default_factory=list)
    exits: List[SignalOutcome] = field(default_factory=list)


def order_signals(signals: Iterable[Signal]) -> List[Signal]:
    """Actionable signals first, then by confidence, highest first."""
    return sorted(signals, key=lambda s: (not s.is_actionable, -s.confidence))


class MarketLoopScheduler:
    """One timer per market plus the breaker, cost and outcome timers.

    A market's tick never overlaps with itself; different markets run concurrently.
    """

    def __init__(
        self,
        store,
        pipeline,
        guards,
        notifier,
        settings: TradingSettings,
        breakers: Sequence = (),
        reconciler=None,
        outcome_tracker=None,
        breaker_interval_s: float = 60,
        reconcile_interval_s: float = 300,
        outcome_interval_s: float = 300,
        service_name: str = 'trade-executor',
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.pipeline = pipeline
        self.guards = guards
        self.notifier = notifier
        self.settings = settings
        self.breakers = list(breakers)
        self.reconciler = reconciler
        self.outcome_tracker = outcome_tracker
        self.breaker_interval_s = breaker_interval_s
        self.reconcile_interval_s = reconcile_interval_s
        self.outcome_interval_s = outcome_interval_s
        self.service_name = service_name
        self.clock = clock
        self.states: Dict[Market, MarketLoopState] = {m: MarketLoopState() for m in settings.execute_markets}
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    async def run_market_once(self, market: Market) -> TickResult:
        state = self.states.setdefault(market, MarketLoopState())
        if state.running:
            state.skipped += 1
            metrics.record_tick_skipped(market.value, 'in_flight')
            logger.warning("%s tick skipped: previous tick still running", market.value)
            return TickResult(market, 'skipped', ['previous tick in flight'])

        state.running = True
        state.last_started_at = self.clock()
        metrics.set_loop_running(market.value, True)
        started = time.monotonic()
        try:
            result = await self._tick(market)
            state.last_error = None
            return result
        except Exception as exc:
            state.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("%s tick failed", market.value)
            await self._heartbeat(market, 'error', {'error': state.last_error})
            return TickResult(market, 'error', [state.last_error])
        finally:
            state.running = False
            state.runs += 1
            state.last_finished_at = self.clock()
            metrics.set_loop_running(market.value, False)
            metrics.record_tick(market.value, time.monotonic() - started)

    async def _tick(self, market: Market) -> TickResult:
        if not is_market_open(market, self.clock(), self.settings.run_mode, self.settings.market_hours_guard):
            metrics.record_tick_skipped(market.value, 'market_closed')
            logger.debug("%s closed (%s), tick skipped", market.value, self.settings.run_mode)
            return TickResult(market, 'closed')

        check = await self.guards.check_all(broker_for_market(market))
        if not check.allowed:
            await self._report_guard_block(market, check.reasons)
            return TickResult(market, 'blocked', list(check.reasons))

        signals = await self.store.fetch_unconsumed_signals(
            market, self.settings.min_confidence, self.settings.max_candidates_per_market
        )
        outcomes = await self.process_signals(market, signals)
        exits = await self.pipeline.evaluate_exits(market)
        await self._heartbeat(market, 'ok', {
            'signals': len(signals),
            'executed': sum(1 for o in outcomes if o.status is OutcomeStatus.EXECUTED),
            'exits': len(exits),
        })
        return TickResult(market, 'ran', outcomes=outcomes, exits=exits)

    async def process_signals(self, market: Market, signals: Iterable[Signal]) -> List[SignalOutcome]:
        outcomes = []
        for signal in order_signals(signals):
            try:
                outcome = await self.pipeline.process_signal(signal)
            except Exception as exc:
                logger.exception("Signal %s (%s %s) failed", signal.id, market.value, signal.symbol)
                outcome = SignalOutcome(signal.id, OutcomeStatus.FAILED, f"{type(exc).__name__}: {exc}")
            finally:
                await self._mark_consumed(signal)
            metrics.record_signal(market.value, outcome.status.value)
            outcomes.append(outcome)
        return outcomes

    async def _mark_consumed(self, signal: Signal) -> None:
        try:
            if not await self.store.mark_signal_consumed(signal.id):
                logger.warning("Signal %s was already consumed", signal.id)
        except Exception:
            logger.exception("Failed to mark signal %s consumed", signal.id)

    async def _report_guard_block(self, market: Market, reasons: List[str]) -> None:
        metrics.record_guard_block(market.value)
        logger.warning("%s tick blocked: %s", market.value, '; '.join(reasons))
        try:
            await self.notifier.send(NotificationEvent(
                event_type='GUARD_BLOCKED',
                level=NotificationLevel.WARNING,
                title=f"Trading blocked ({market.value})",
                message='; '.join(reasons),
                market=market.value,
                payload={'reasons': reasons},
                dedupe_key=f"GUARD_BLOCKED:{market.value}:{minute_key(self.clock())}",
            ))
        except Exception:
            logger.exception("GUARD_BLOCKED notification for %s failed", market.value)

    async def _heartbeat(self, market: Market, state: str, details: Dict) -> None:
        try:
            await self.store.upsert_worker_status(f"{self.service_name}:{market.value}", state, details)
        except Exception as exc:
            logger.error("Worker status update for %s failed: %s", market.value, exc)

    async def check_breakers(self) -> None:
        for breaker in self.breakers:
            try:
                await breaker.check()
            except Exception:
                logger.exception("Circuit breaker check for %s failed", breaker.broker.value)

    async def run_all_once(self) -> List[TickResult]:
        """Single pass used when ``loop_mode`` is off."""
        await self.check_breakers()
        results = await asyncio.gather(*(self.run_market_once(m) for m in self.settings.execute_markets))
        if self.reconciler is not None:
            await self.reconciler.run_once()
        if self.outcome_tracker is not None:
            await self.outcome_tracker.run_once()
        return list(results)

    def start(self) -> List[asyncio.Task]:
        stop = self._stop_event = asyncio.Event()
        jobs = [
            (f"market:{m.value}", self.settings.interval_for(m), partial(self.run_market_once, m))
            for m in self.settings.execute_markets
        ]
        if self.breakers:
            jobs.append(('circuit_breaker', self.breaker_interval_s, self.check_breakers))
        if self.reconciler is not None:
            jobs.append(('cost_reconciler', self.reconcile_interval_s, self.reconciler.run_once))
        if self.outcome_tracker is not None:
            jobs.append(('outcome_tracker', self.outcome_interval_s, self.outcome_tracker.run_once))
        self._tasks = [
            asyncio.create_task(run_periodic(name, interval, job, stop), name=name)
            for name, interval, job in jobs
        ]
        logger.info("Scheduler started: %s", ', '.join(name for name, _, _ in jobs))
        return self._tasks

    async def run(self) -> None:
        await run_tasks_with_cleanup(self.start())

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
