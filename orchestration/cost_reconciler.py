import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from brokers.base import OrderCosts
from config import config
from config.utils import get_config_section
from core.errors import BrokerError
from core.retry import RetryPolicy
from core.types import Trade
from monitoring.metrics import metrics
from risk.guards import utcnow


logger = logging.getLogger(__name__)

COST_UNAVAILABLE = 'UNAVAILABLE'


class CostReconciler:
    """Back-fills broker fees and taxes onto filled trades.

    Brokers whose client offers no order-detail lookup get their trades marked
    ``UNAVAILABLE`` so they leave the backlog.
    """

    def __init__(
        self,
        store,
        registry,
        lookback_days: Optional[int] = None,
        batch_size: Optional[int] = None,
        poll_max: Optional[int] = None,
        poll_interval_s: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utcnow,
    ):
        cfg = get_config_section(config, 'cost_reconciliation')
        self.store = store
        self.registry = registry
        self.lookback = timedelta(days=int(lookback_days if lookback_days is not None else cfg.get('lookback_days', 3)))
        self.batch_size = int(batch_size if batch_size is not None else cfg.get('batch_size', 100))
        self.poll_max = max(1, int(poll_max if poll_max is not None else cfg.get('order_poll_max', 3)))
        self.poll_interval_s = float(
            poll_interval_s if poll_interval_s is not None else cfg.get('order_poll_interval_sec', 0.3)
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.rng = rng
        self.clock = clock

    async def run_once(self) -> int:
        trades = await self.store.fetch_trades_missing_costs(self.clock() - self.lookback, self.batch_size)
        reconciled = 0
        for trade in trades:
            try:
                if await self.reconcile_trade(trade):
                    reconciled += 1
            except Exception:
                logger.exception("Cost reconciliation failed for trade %s (%s)", trade.id, trade.order_id)
        if trades:
            logger.info("Cost reconciliation: %d/%d trades updated", reconciled, len(trades))
        return reconciled

    async def reconcile_trade(self, trade: Trade) -> bool:
        if trade.broker not in self.registry:
            logger.warning("Trade %s: no client for %s, costs left pending", trade.id, trade.broker.value)
            return False
        client = self.registry.get(trade.broker)
        fetch = getattr(client, 'fetch_order_costs', None)
        if fetch is None:
            await self.store.update_trade_costs(trade.id, None, None, COST_UNAVAILABLE)
            metrics.record_cost_reconciled(COST_UNAVAILABLE.lower())
            return True

        costs = await self._poll_until_final(fetch, trade.order_id)
        if costs is None:
            return False
        source = f"{trade.broker.value.lower()}_api"
        await self.store.update_trade_costs(trade.id, costs.fee, costs.tax, source, costs.executed_price)
        metrics.record_cost_reconciled(source)
        logger.debug("Trade %s costs fee=%s tax=%s", trade.id, costs.fee, costs.tax)
        return True

    async def _poll_until_final(self, fetch, order_id: str) -> Optional[OrderCosts]:
        for poll in range(self.poll_max):
            costs = await self._fetch_with_retry(fetch, order_id)
            if costs is None:
                return None
            if costs.final:
                return costs
            if poll < self.poll_max - 1:
                await self.sleep(self.poll_interval_s)
        logger.info("Order %s not final after %d polls; retrying next run", order_id, self.poll_max)
        return None

    async def _fetch_with_retry(self, fetch, order_id: str) -> Optional[OrderCosts]:
        policy = self.retry_policy
        for attempt in range(policy.max_attempts):
            try:
                return await fetch(order_id)
            except BrokerError as exc:
                if not exc.transient or attempt == policy.max_attempts - 1:
                    raise
                delay = policy.delay_for(attempt, self.rng)
                logger.warning("Order %s lookup failed (%s); retrying in %.2fs", order_id, exc, delay)
                await self.sleep(delay)
        return None
