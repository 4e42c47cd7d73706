import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from config import config
from config.utils import get_config_section
from core.errors import DataIntegrityError
from core.money import ZERO, optional_decimal, pct
from core.types import Broker, OrderSide
from monitoring.metrics import metrics
from monitoring.notifications import NotificationEvent, NotificationLevel
from risk.guards import CIRCUIT_BREAKER_MARKER, trading_day_start, utcnow
from storage.records import RiskEvent


logger = logging.getLogger(__name__)


class BreakerStatus(Enum):
    NORMAL = "NORMAL"
    HALTED = "HALTED"


@dataclass(frozen=True)
class DailyPnL:
    realized: Decimal
    unrealized: Decimal
    account_size: Decimal
    positions_value: Decimal

    @property
    def total(self) -> Decimal:
        return self.realized + self.unrealized

    @property
    def pct(self) -> Decimal:
        return self.total / self.account_size

    @property
    def equity(self) -> Decimal:
        return self.account_size + self.positions_value


@dataclass
class CircuitBreakerState:
    status: BreakerStatus
    triggered: bool
    reason: Optional[str]
    daily_pnl: Decimal
    daily_pnl_pct: Decimal
    drawdown_pct: Optional[Decimal] = None
    cooldown_until: Optional[datetime] = None
    actions: Dict[str, bool] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'triggered': self.triggered,
            'reason': self.reason,
            'daily_pnl': self.daily_pnl,
            'daily_pnl_pct': self.daily_pnl_pct,
            'drawdown_pct': self.drawdown_pct,
            'cooldown_until': self.cooldown_until,
            'actions': dict(self.actions),
        }


class CircuitBreaker:
    """Daily-loss and drawdown kill switch for one broker account.

    NORMAL -> HALTED when today's realized + unrealized P&L falls to
    ``max_daily_loss_pct`` of the account or equity falls ``max_drawdown_pct``
    below its recorded high-water mark. The transition extends the shared cooldown
    before it disables trading and liquidates the broker's positions, so a halt is
    never visible without its cooldown. Each step is attempted even if an earlier
    one failed.

    The breaker never re-enables trading. Leaving HALTED requires the cooldown to
    expire and an explicit re-enable (``SystemGuards.try_auto_recover`` or an operator).
    """

    def __init__(
        self,
        store,
        liquidator,
        notifier,
        broker: Broker,
        dry_run: bool = True,
        max_daily_loss_pct: Optional[Decimal] = None,
        max_drawdown_pct: Optional[Decimal] = None,
        cooldown_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        breaker_config: Optional[Dict[str, Any]] = None,
    ):
        cfg = breaker_config if breaker_config is not None else get_config_section(config, 'circuit_breaker')
        self.store = store
        self.liquidator = liquidator
        self.notifier = notifier
        self.broker = broker
        self.dry_run = dry_run
        self.clock = clock
        self.max_daily_loss_pct = Decimal(str(
            max_daily_loss_pct if max_daily_loss_pct is not None else cfg.get('max_daily_loss_pct', '-0.05')
        ))
        self.max_drawdown_pct = Decimal(str(
            max_drawdown_pct if max_drawdown_pct is not None else cfg.get('max_drawdown_pct', '-0.10')
        ))
        self.cooldown = timedelta(minutes=int(
            cooldown_minutes if cooldown_minutes is not None else cfg.get('cooldown_minutes', 60)
        ))

    async def calculate_daily_pnl(self) -> DailyPnL:
        """Today's P&L with exact decimals; any missing input raises DataIntegrityError."""
        account = await self.store.get_account_cash(self.broker)
        if account.total <= ZERO:
            raise DataIntegrityError(f"{self.broker.value} account total is {account.total}")

        positions = await self.store.get_positions(self.broker)
        avg_cost = {(p.market, p.symbol): p.avg_price for p in positions}

        # Buys move cash into a position at cost; only sells realize a gain or loss.
        realized = ZERO
        for trade in await self.store.get_filled_trades_since(self.broker, trading_day_start(self.clock())):
            if trade.side is not OrderSide.SELL:
                continue
            if trade.price is None:
                raise DataIntegrityError(f"Filled trade {trade.id} ({trade.symbol}) has no price")
            cost = optional_decimal(trade.metadata.get('avg_price'), f"trade {trade.id} avg_price")
            if cost is None:
                cost = avg_cost.get((trade.market, trade.symbol))
            if cost is None:
                raise DataIntegrityError(f"No average cost for sold {trade.symbol} (trade {trade.id})")
            realized += trade.qty * (trade.price - cost)

        unrealized = ZERO
        positions_value = ZERO
        for position in positions:
            price = await self.store.get_latest_price(position.market, position.symbol)
            if price is None:
                raise DataIntegrityError(f"No mark price for open position {position.symbol}")
            mark_value = position.qty * price
            positions_value += mark_value
            unrealized += mark_value - position.cost_basis

        return DailyPnL(
            realized=realized,
            unrealized=unrealized,
            account_size=account.total,
            positions_value=positions_value,
        )

    async def check(self) -> CircuitBreakerState:
        pnl = await self.calculate_daily_pnl()
        peak = await self.store.update_equity_peak(self.broker, pnl.equity)
        drawdown = (pnl.equity - peak) / peak if peak and peak > ZERO else ZERO
        metrics.update_pnl(self.broker.value, float(pnl.pct), float(drawdown))

        reason = None
        if pnl.pct <= self.max_daily_loss_pct:
            reason = f"daily loss {pct(pnl.pct)} breached limit {pct(self.max_daily_loss_pct)}"
        elif drawdown <= self.max_drawdown_pct:
            reason = f"drawdown {pct(drawdown)} from peak breached limit {pct(self.max_drawdown_pct)}"

        guard = await self.store.get_system_guard()
        already_halted = not guard.trading_enabled and guard.in_cooldown(self.clock())
        state = CircuitBreakerState(
            status=BreakerStatus.HALTED if already_halted else BreakerStatus.NORMAL,
            triggered=False,
            reason=reason,
            daily_pnl=pnl.total,
            daily_pnl_pct=pnl.pct,
            drawdown_pct=drawdown,
            cooldown_until=guard.cooldown_until,
        )
        if reason is None:
            return state
        if already_halted:
            logger.info("Breach persists while halted (%s); cooldown until %s", reason, guard.cooldown_until)
            return state
        return await self.trigger(reason, state)

    async def trigger(self, reason: str, state: CircuitBreakerState) -> CircuitBreakerState:
        logger.critical("Circuit breaker triggered for %s: %s", self.broker.value, reason)
        metrics.record_breaker_trip(self.broker.value, 'drawdown' if 'drawdown' in reason else 'daily_loss')
        state.status = BreakerStatus.HALTED
        state.triggered = True
        state.reason = reason
        details = {
            'broker': self.broker.value,
            'daily_pnl': state.daily_pnl,
            'daily_pnl_pct': state.daily_pnl_pct,
            'drawdown_pct': state.drawdown_pct,
        }

        async def risk_event():
            await self.store.log_risk_event(RiskEvent(
                event_type='circuit_breaker',
                violation_type='daily_loss_limit' if 'daily loss' in reason else 'max_drawdown',
                severity='critical',
                details={**details, 'reason': reason},
            ))

        async def halt():
            await self.store.set_trading_enabled(False, f"{CIRCUIT_BREAKER_MARKER}: {reason}")
            metrics.update_trading_enabled(False)

        async def liquidate():
            summary = await self.liquidator.liquidate_all(
                self.broker, self.liquidator.default_options(dry_run=self.dry_run)
            )
            details['liquidation'] = {
                'total': summary.total, 'success': summary.success,
                'failed': summary.failed, 'skipped': summary.skipped,
            }
            if summary.failed:
                raise RuntimeError(f"{summary.failed} positions not liquidated: {summary.failed_symbols}")

        async def cooldown():
            state.cooldown_until = await self.store.extend_cooldown(self.clock() + self.cooldown)

        async def notify():
            await self.notifier.send(NotificationEvent(
                event_type='CIRCUIT_BREAKER',
                level=NotificationLevel.ERROR,
                title=f"Circuit breaker triggered ({self.broker.value})",
                message=f"{reason}; trading halted until {state.cooldown_until}",
                payload={**details, 'cooldown_until': state.cooldown_until},
            ))

        for name, action in (
            ('risk_event', risk_event),
            ('cooldown', cooldown),
            ('halt_trading', halt),
            ('liquidate', liquidate),
            ('notify', notify),
        ):
            try:
                await action()
                state.actions[name] = True
            except Exception:
                state.actions[name] = False
                metrics.record_breaker_action_failure(name)
                logger.exception("Circuit breaker action %s failed for %s", name, self.broker.value)
        return state
