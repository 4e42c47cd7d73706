import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from brokers.base import OrderRequest
from config import config
from config.utils import get_config_section
from core.errors import BrokerError
from core.money import ONE, ZERO
from core.retry import RetryPolicy
from core.types import Broker, OrderSide, OrderStatus, OrderType, Position, Trade, TradeStatus
from monitoring.metrics import metrics
from monitoring.notifications import NotificationEvent, NotificationLevel
from risk.guards import utcnow
from risk.position_sizer import round_order_quantity
from risk.validators import base_asset


logger = logging.getLogger(__name__)

LIQUIDATION_SOURCE = 'circuit_breaker_liquidation'


def liquidation_key(broker: Broker, symbol: str, run_at: datetime) -> str:
    return f"liq:{broker.value}:{symbol}:{run_at.strftime('%Y%m%dT%H%M%S%f')}"


@dataclass
class LiquidationOptions:
    dry_run: bool = True
    liquidate_pct: Decimal = ONE
    min_qty: Decimal = Decimal('0.00001')

    def __post_init__(self):
        self.liquidate_pct = min(max(Decimal(str(self.liquidate_pct)), ZERO), ONE)
        self.min_qty = Decimal(str(self.min_qty))


@dataclass
class PositionLiquidation:
    symbol: str
    market: str
    requested_qty: Decimal
    success: bool = False
    skipped: bool = False
    order_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    dry_run: bool = False
    trade_id: Optional[int] = None
    idempotency_key: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'market': self.market,
            'requested_qty': self.requested_qty,
            'success': self.success,
            'skipped': self.skipped,
            'order_id': self.order_id,
            'error': self.error,
            'attempts': self.attempts,
            'dry_run': self.dry_run,
            'idempotency_key': self.idempotency_key,
        }


@dataclass
class LiquidationSummary:
    broker: Broker
    dry_run: bool
    results: List[PositionLiquidation] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return self.total - self.success - self.skipped

    @property
    def failed_symbols(self) -> List[str]:
        return [r.symbol for r in self.results if not r.success and not r.skipped]


class Liquidator:
    """Force-closes every open position of a broker with bounded per-position retries."""

    def __init__(
        self,
        store,
        registry,
        notifier,
        retry_policy: Optional[RetryPolicy] = None,
        quote_currency: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utcnow,
    ):
        cfg = get_config_section(config, 'liquidation')
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.retry_policy = retry_policy or RetryPolicy.from_section(cfg)
        self.quote_currency = (quote_currency or cfg.get('quote_currency') or 'KRW').upper()
        self.default_liquidate_pct = Decimal(str(cfg.get('liquidate_pct', 1)))
        self.default_min_qty = Decimal(str(cfg.get('min_qty', '0.00001')))
        self.sleep = sleep
        self.rng = rng
        self.clock = clock

    def default_options(self, dry_run: bool) -> LiquidationOptions:
        return LiquidationOptions(
            dry_run=dry_run, liquidate_pct=self.default_liquidate_pct, min_qty=self.default_min_qty
        )

    def _is_quote_currency(self, symbol: str) -> bool:
        return symbol.upper() == self.quote_currency or base_asset(symbol) == self.quote_currency

    async def liquidate_all(self, broker: Broker, options: Optional[LiquidationOptions] = None) -> LiquidationSummary:
        options = options or self.default_options(dry_run=True)
        positions = [
            p for p in await self.store.get_positions(broker)
            if p.is_open and not self._is_quote_currency(p.symbol)
        ]
        logger.warning(
            "Liquidating %d %s positions (pct=%s, dry_run=%s)",
            len(positions), broker.value, options.liquidate_pct, options.dry_run,
        )
        client = self.registry.get(broker)
        summary = LiquidationSummary(broker=broker, dry_run=options.dry_run)
        run_at = self.clock()

        for position in positions:
            qty = round_order_quantity(position.market, position.qty * options.liquidate_pct)
            if qty <= ZERO or qty < options.min_qty:
                logger.info("Skipping %s: qty %s below minimum %s", position.symbol, qty, options.min_qty)
                summary.results.append(PositionLiquidation(
                    symbol=position.symbol,
                    market=position.market.value,
                    requested_qty=qty,
                    skipped=True,
                    dry_run=options.dry_run,
                ))
                metrics.record_liquidation(broker.value, 'skipped')
                continue
            result = await self._liquidate_position(
                client, broker, position, qty, options, liquidation_key(broker, position.symbol, run_at)
            )
            summary.results.append(result)
            metrics.record_liquidation(broker.value, 'success' if result.success else 'failed')

        await self._notify(summary)
        return summary

    async def _liquidate_position(self, client, broker: Broker, position: Position, qty: Decimal,
                                  options: LiquidationOptions, key: str) -> PositionLiquidation:
        outcome = PositionLiquidation(
            symbol=position.symbol,
            market=position.market.value,
            requested_qty=qty,
            dry_run=options.dry_run,
            idempotency_key=key,
        )
        request = OrderRequest(
            market=position.market,
            symbol=position.symbol,
            side=OrderSide.SELL,
            order_type=OrderType.MARKET,
            quantity=qty,
            reason=LIQUIDATION_SOURCE,
            dry_run=options.dry_run,
            idempotency_key=key,
            metadata={'source': LIQUIDATION_SOURCE},
        )
        executed_price = None

        if options.dry_run:
            outcome.success = True
        else:
            policy = self.retry_policy
            for attempt in range(policy.max_attempts):
                outcome.attempts = attempt + 1
                # Every attempt carries the same key, so a retry after an ambiguous
                # timeout cannot open a second sell at the broker.
                try:
                    result = await client.place_order(request)
                except BrokerError as exc:
                    outcome.error = f"{type(exc).__name__}: {exc}"
                    logger.warning(
                        "Liquidation attempt %d/%d for %s raised: %s",
                        outcome.attempts, policy.max_attempts, position.symbol, exc,
                    )
                    if not exc.transient:
                        break
                except Exception as exc:
                    outcome.error = f"{type(exc).__name__}: {exc}"
                    logger.error("Liquidation of %s stopped on non-retryable error: %s", position.symbol, exc)
                    break
                else:
                    if result.succeeded:
                        outcome.success = True
                        outcome.error = None
                        outcome.order_id = result.order_id
                        executed_price = result.executed_price
                        break
                    outcome.error = result.message
                    logger.warning(
                        "Liquidation attempt %d/%d for %s returned %s: %s",
                        outcome.attempts, policy.max_attempts, position.symbol, result.status.value, result.message,
                    )
                    if result.status is not OrderStatus.FAILED:
                        break
                if attempt < policy.max_attempts - 1:
                    await self.sleep(policy.delay_for(attempt, self.rng))

        if not outcome.success:
            logger.error("Liquidation of %s failed after %d attempts: %s",
                         position.symbol, outcome.attempts, outcome.error)
        await self._record(broker, position, outcome, executed_price)
        return outcome

    async def _record(self, broker: Broker, position: Position, outcome: PositionLiquidation,
                      executed_price: Optional[Decimal]) -> None:
        if outcome.dry_run:
            status = TradeStatus.SIMULATED
        elif outcome.success:
            status = TradeStatus.FILLED
        else:
            status = TradeStatus.FAILED

        price = executed_price
        try:
            if price is None:
                price = await self.store.get_latest_price(position.market, position.symbol)
            outcome.trade_id = await self.store.insert_trade(Trade(
                broker=broker,
                market=position.market,
                symbol=position.symbol,
                side=OrderSide.SELL,
                qty=outcome.requested_qty,
                price=price,
                status=status,
                order_id=outcome.order_id,
                idempotency_key=outcome.idempotency_key,
                metadata={
                    'source': LIQUIDATION_SOURCE,
                    'attempts': outcome.attempts,
                    'error': outcome.error,
                    'dry_run': outcome.dry_run,
                    'avg_price': position.avg_price,
                },
            ))
            if status is TradeStatus.FILLED:
                await self.store.apply_fill(
                    broker, position.market, position.symbol, OrderSide.SELL, outcome.requested_qty, price
                )
        except Exception:
            logger.exception("Recording liquidation of %s failed", position.symbol)

    async def _notify(self, summary: LiquidationSummary) -> None:
        suffix = " / DRY_RUN" if summary.dry_run else ""
        if summary.failed:
            level = NotificationLevel.ERROR
            title = "Liquidation failed"
            message = f"failed: {', '.join(summary.failed_symbols)} ({summary.success} ok, {summary.skipped} skipped{suffix})"
        else:
            level = NotificationLevel.WARNING
            title = "Liquidation completed"
            message = f"{summary.success} closed, {summary.skipped} skipped{suffix}"
        try:
            await self.notifier.send(NotificationEvent(
                event_type='LIQUIDATION',
                level=level,
                title=f"{title} ({summary.broker.value})",
                message=message,
                payload={
                    'broker': summary.broker.value,
                    'total': summary.total,
                    'success': summary.success,
                    'failed': summary.failed,
                    'skipped': summary.skipped,
                    'dry_run': summary.dry_run,
                    'results': [r.as_dict() for r in summary.results],
                },
            ))
        except Exception:
            logger.exception("Liquidation summary notification failed for %s", summary.broker.value)
