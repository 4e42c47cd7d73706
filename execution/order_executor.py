import logging
import time
from dataclasses import dataclass
from typing import Optional

from brokers.base import DRY_RUN_MESSAGE, OrderRequest, OrderResult
from core.types import Broker, OrderStatus, Trade, TradeStatus
from monitoring.metrics import metrics


logger = logging.getLogger(__name__)


@dataclass
class ExecutionRecord:
    result: OrderResult
    trade_id: Optional[int] = None


class OrderExecutor:
    """Places one order through the broker's client and records fills.

    The executor never retries: order placement is not idempotent, so retry
    policy belongs to the caller.
    """

    def __init__(self, registry, store):
        self.registry = registry
        self.store = store

    async def execute(self, broker: Broker, request: OrderRequest) -> ExecutionRecord:
        client = self.registry.get(broker)
        if request.dry_run:
            logger.info("[DRY_RUN] %s %s %s qty=%s", broker.value, request.side.value, request.symbol, request.quantity)
            result = OrderResult.for_request(broker, request, OrderStatus.SKIPPED, DRY_RUN_MESSAGE)
            metrics.record_order(broker.value, result.status.value)
            return ExecutionRecord(result=result)

        started = time.monotonic()
        try:
            result = await client.place_order(request)
        except Exception as exc:
            logger.error("%s order for %s failed: %s", broker.value, request.symbol, exc)
            result = OrderResult.for_request(
                broker, request, OrderStatus.FAILED, f"{type(exc).__name__}: {exc}"
            )
        metrics.record_order(broker.value, result.status.value, time.monotonic() - started)

        if not result.succeeded:
            if result.status is OrderStatus.FAILED:
                logger.warning("%s %s %s not filled: %s", broker.value, request.side.value, request.symbol, result.message)
            return ExecutionRecord(result=result)

        qty = result.executed_qty or request.quantity
        price = result.executed_price or request.price
        trade_id = await self.store.insert_trade(Trade(
            broker=broker,
            market=request.market,
            symbol=request.symbol,
            side=request.side,
            qty=qty,
            price=price,
            status=TradeStatus.FILLED,
            order_id=result.order_id,
            idempotency_key=request.idempotency_key,
            metadata={**request.metadata, 'reason': request.reason, 'order_type': request.order_type.value},
        ))
        if trade_id is not None:
            await self.store.apply_fill(broker, request.market, request.symbol, request.side, qty, price)
        logger.info(
            "%s %s %s filled qty=%s price=%s order=%s",
            broker.value, request.side.value, request.symbol, qty, price, result.order_id,
        )
        return ExecutionRecord(result=result, trade_id=trade_id)
