import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional

from brokers.base import OrderRequest
from brokers.upbit import QUOTE_CURRENCY
from compliance.builders import build_aspiration, build_capability, build_execution, build_outcome
from config.settings import TradingSettings
from core.errors import DataIntegrityError
from core.money import ZERO, pct
from core.types import Market, OrderSide, OrderStatus, OrderType, Position, Signal, SignalType, broker_for_market
from monitoring.metrics import metrics
from monitoring.notifications import NotificationEvent, NotificationLevel, minute_key
from risk.guards import utcnow
from risk.position_sizer import round_order_quantity
from risk.risk_validator import AccountSnapshot, RiskValidationResult
from storage.records import AceRecord, RiskEvent


logger = logging.getLogger(__name__)


class OutcomeStatus(Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SignalOutcome:
    signal_id: str
    status: OutcomeStatus
    reason: str = ''
    violations: List[str] = field(default_factory=list)
    order_status: Optional[OrderStatus] = None
    trade_id: Optional[int] = None
    ace_log_id: Optional[int] = None


def idempotency_key(signal: Signal) -> str:
    return f"{signal.broker.value}:{signal.market.value}:{signal.symbol}:{signal.signal_type.value}:{signal.id}"


class TradePipeline:
    """Turns one signal into at most one order: size, validate, log, execute."""

    def __init__(self, store, registry, executor, validator, guards, ace_logger, notifier,
                 settings: TradingSettings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.registry = registry
        self.executor = executor
        self.validator = validator
        self.guards = guards
        self.ace_logger = ace_logger
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    async def resolve_entry_price(self, signal: Signal) -> Decimal:
        if signal.entry_price is not None:
            return signal.entry_price
        price = await self.registry.get(signal.broker).get_current_price(signal.market, signal.symbol)
        if price is None:
            price = await self.store.get_latest_price(signal.market, signal.symbol)
        if price is None:
            raise DataIntegrityError(f"No price available for {signal.market.value}:{signal.symbol}")
        return price

    async def load_snapshot(self, signal: Signal) -> AccountSnapshot:
        now = self.clock()
        account = await self.store.get_account_cash(signal.broker)
        events = await self.store.get_upcoming_events(
            signal.symbol, now, now + timedelta(hours=self.validator.event_window_hours)
        )
        return AccountSnapshot(
            account_size=account.sizing_base,
            current_positions_value=await self.store.get_current_position_value(signal.broker),
            current_symbol_value=await self.store.get_current_position_value(
                signal.broker, signal.market, signal.symbol
            ),
            upcoming_events=tuple(events),
            now=now,
        )

    async def _held_position(self, signal: Signal) -> Optional[Position]:
        positions = await self.store.get_positions(signal.broker, signal.market, signal.symbol)
        return positions[0] if positions else None

    async def process_signal(self, signal: Signal) -> SignalOutcome:
        if not signal.is_actionable:
            return SignalOutcome(signal.id, OutcomeStatus.SKIPPED, f"{signal.signal_type.value} signal")

        entry_price = await self.resolve_entry_price(signal)
        position = None
        if signal.side is OrderSide.BUY:
            snapshot = await self.load_snapshot(signal)
            risk = self.validator.validate(signal, snapshot, entry_price)
            qty = round_order_quantity(signal.market, risk.position_size)
            if risk.approved and qty <= ZERO:
                risk.approved = False
                risk.violations.append(f"position size {risk.position_size:.8f} rounds to zero")
        else:
            position = await self._held_position(signal)
            risk = self.validator.validate_exit(signal, position, entry_price)
            qty = round_order_quantity(signal.market, risk.position_size)

        if not risk.approved:
            await self._record_rejection(signal, risk)
            return SignalOutcome(signal.id, OutcomeStatus.REJECTED, 'risk rejected', violations=list(risk.violations))

        gate = await self.guards.check_system_guard()
        if not gate.allowed:
            reason = '; '.join(gate.reasons)
            logger.warning("Signal %s approved but system guard blocks orders: %s", signal.id, reason)
            return SignalOutcome(signal.id, OutcomeStatus.BLOCKED, reason)

        return await self._execute(signal, risk, entry_price, qty, position)

    async def _record_rejection(self, signal: Signal, risk: RiskValidationResult) -> None:
        metrics.record_rejection(signal.market.value)
        logger.info("Signal %s %s %s rejected: %s", signal.id, signal.signal_type.value, signal.symbol,
                    '; '.join(risk.violations))
        await self.store.log_risk_event(RiskEvent(
            event_type='trade_rejected',
            violation_type='risk_validation',
            severity='medium',
            symbol=signal.symbol,
            details={'signal_id': signal.id, 'market': signal.market.value, **risk.as_dict()},
        ))

    async def _execute(self, signal: Signal, risk: RiskValidationResult, entry_price: Decimal,
                       qty: Decimal, position: Optional[Position]) -> SignalOutcome:
        side = signal.side
        now = self.clock()
        stop_loss = risk.stop_loss if risk.stop_loss is not None else entry_price
        metadata = {'signal_id': signal.id, 'confidence': signal.confidence}
        if position is not None:
            metadata['avg_price'] = position.avg_price
        request = OrderRequest(
            market=signal.market,
            symbol=signal.symbol,
            side=side,
            order_type=OrderType.MARKET,
            quantity=qty,
            price=entry_price,
            reason=signal.reason,
            dry_run=self.settings.dry_run,
            idempotency_key=idempotency_key(signal),
            metadata=metadata,
        )
        record = AceRecord(
            broker=signal.broker,
            market=signal.market,
            symbol=signal.symbol,
            signal_id=signal.id,
            aspiration=build_aspiration(signal, entry_price, stop_loss, self.settings.strategy),
            capability=build_capability(signal, risk.as_dict()),
            execution=build_execution('APPROVED', side, entry_price, risk.stop_loss, signal.target_price,
                                      qty, now, reason=signal.reason),
        )
        ace_id = await self.ace_logger.log_entry(record)

        execution = await self.executor.execute(signal.broker, request)
        result = execution.result
        fill_price = result.executed_price or entry_price
        await self.ace_logger.record_execution(ace_id, build_execution(
            'APPROVED', side, fill_price, risk.stop_loss, signal.target_price,
            result.executed_qty or qty, now, reason=signal.reason, status=result.status.value,
            trade_id=execution.trade_id, order_id=result.order_id, message=result.message,
        ))

        if result.status is OrderStatus.SUCCESS:
            await self.guards.record_success()
            if side is OrderSide.SELL and position is not None:
                await self.ace_logger.record_outcome(ace_id, build_outcome(
                    OrderSide.BUY, position.avg_price, fill_price, result.executed_qty or qty,
                    now, self.clock(), exit_reason=signal.reason,
                ))
            await self._notify(signal, 'TRADE_FILLED', NotificationLevel.INFO,
                               f"{signal.symbol} {side.value} qty={result.executed_qty or qty} price={fill_price}")
            return SignalOutcome(signal.id, OutcomeStatus.EXECUTED, result.message, order_status=result.status,
                                 trade_id=execution.trade_id, ace_log_id=ace_id)

        if result.status is OrderStatus.FAILED:
            await self.guards.record_failure(f"{signal.symbol} {side.value}: {result.message}")
            await self._notify(signal, 'TRADE_FAILED', NotificationLevel.ERROR,
                               f"{signal.symbol} {side.value} failed: {result.message}")
            return SignalOutcome(signal.id, OutcomeStatus.FAILED, result.message, order_status=result.status,
                                 ace_log_id=ace_id)

        return SignalOutcome(signal.id, OutcomeStatus.SKIPPED, result.message, order_status=result.status,
                             ace_log_id=ace_id)

    async def _notify(self, signal: Signal, event_type: str, level: NotificationLevel, message: str) -> None:
        try:
            await self.notifier.send(NotificationEvent(
                event_type=event_type,
                level=level,
                title=f"{event_type.replace('_', ' ').title()} ({signal.broker.value})",
                message=message,
                market=signal.market.value,
                payload={'signal_id': signal.id, 'symbol': signal.symbol, 'side': signal.signal_type.value},
                dedupe_key=f"{event_type}:{idempotency_key(signal)}:{minute_key(self.clock())}",
            ))
        except Exception:
            logger.exception("Notification %s for signal %s failed", event_type, signal.id)

    async def evaluate_exits(self, market: Market) -> List[SignalOutcome]:
        """Sell held positions whose return has crossed the stop-loss or take-profit line."""
        broker = broker_for_market(market)
        client = self.registry.get(broker)
        outcomes = []
        for position in await self.store.get_positions(broker, market):
            if market is Market.CRYPTO and position.symbol.upper() == QUOTE_CURRENCY:
                continue
            try:
                exit_signal = await self._exit_signal(client, market, position)
                if exit_signal is not None:
                    outcomes.append(await self.process_signal(exit_signal))
            except Exception:
                logger.exception("Exit check for %s:%s failed", market.value, position.symbol)
        return outcomes

    async def _exit_signal(self, client, market: Market, position: Position) -> Optional[Signal]:
        if position.avg_price <= ZERO:
            logger.error("Position %s has non-positive avg price %s", position.symbol, position.avg_price)
            return None
        price = await client.get_current_price(market, position.symbol)
        if price is None:
            price = await self.store.get_latest_price(market, position.symbol)
        if price is None:
            logger.error("No price for held %s:%s; exit rules not evaluated", market.value, position.symbol)
            return None
        change = (price - position.avg_price) / position.avg_price
        if change <= -self.settings.stop_loss_pct:
            reason = f"stop loss hit ({pct(change)})"
        elif change >= self.settings.take_profit_pct:
            reason = f"take profit hit ({pct(change)})"
        else:
            return None
        return Signal(
            id=f"exit:{position.symbol}:{minute_key(self.clock())}",
            symbol=position.symbol,
            market=market,
            broker=position.broker,
            signal_type=SignalType.SELL,
            confidence=1.0,
            entry_price=price,
            reason=reason,
        )
