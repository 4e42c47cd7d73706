import logging
from dataclasses import dataclass, field
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from config import config
from config.utils import get_config_section, parse_bool
from core.types import Broker
from storage.records import GuardState


logger = logging.getLogger(__name__)

KST = ZoneInfo('Asia/Seoul')
MANUAL_MARKER = 'manual'
CIRCUIT_BREAKER_MARKER = 'circuit breaker'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def trading_day_start(now: datetime, tz: ZoneInfo = KST) -> datetime:
    """Midnight of the current trading day (Asia/Seoul), as an aware UTC datetime."""
    local = now.astimezone(tz)
    return datetime.combine(local.date(), dtime.min, tzinfo=tz).astimezone(timezone.utc)


@dataclass
class GuardCheck:
    allowed: bool
    reasons: List[str] = field(default_factory=list)
    recovered: bool = False
    guard: Optional[GuardState] = None
    trades_today: Optional[int] = None


class SystemGuards:
    """Pre-trade gates backed by the shared ``system_guard`` row.

    Guard state is re-read on every call. Any read failure blocks trading.
    """

    def __init__(
        self,
        store,
        max_daily_trades: Optional[int] = None,
        failure_threshold: Optional[int] = None,
        recovery_cooldown_min: Optional[int] = None,
        auto_recover: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
        guard_config: Optional[Dict[str, Any]] = None,
    ):
        cfg = guard_config if guard_config is not None else get_config_section(config, 'guards')
        trading_cfg = get_config_section(config, 'trading')
        self.store = store
        self.clock = clock
        self.max_daily_trades = int(
            max_daily_trades if max_daily_trades is not None else trading_cfg.get('max_daily_trades') or 30
        )
        self.failure_threshold = int(
            failure_threshold if failure_threshold is not None
            else cfg.get('auto_disable_consecutive_failures') or 3
        )
        self.recovery_cooldown = timedelta(minutes=int(
            recovery_cooldown_min if recovery_cooldown_min is not None
            else cfg.get('auto_recovery_cooldown_min') or 10
        ))
        self.auto_recover = auto_recover if auto_recover is not None else parse_bool(cfg.get('auto_recover'), True)

    async def check_system_guard(self) -> GuardCheck:
        now = self.clock()
        try:
            guard = await self.store.get_system_guard()
        except Exception as exc:
            logger.error("System guard unreadable, blocking trading: %s", exc)
            return GuardCheck(allowed=False, reasons=[f"system guard unavailable: {exc}"])

        reasons = []
        if not guard.trading_enabled:
            reasons.append(f"trading disabled ({guard.reason or 'no reason recorded'})")
        if guard.in_cooldown(now):
            reasons.append(f"cooldown active until {guard.cooldown_until.isoformat()}")
        return GuardCheck(allowed=not reasons, reasons=reasons, guard=guard)

    async def is_in_cooldown(self) -> bool:
        try:
            guard = await self.store.get_system_guard()
        except Exception as exc:
            logger.error("Cooldown state unreadable, treating as active: %s", exc)
            return True
        return guard.in_cooldown(self.clock())

    async def check_daily_trade_limit(self, broker: Broker) -> GuardCheck:
        since = trading_day_start(self.clock())
        try:
            count = await self.store.count_trades_since(broker, since)
        except Exception as exc:
            logger.error("Daily trade count unavailable for %s: %s", broker.value, exc)
            return GuardCheck(allowed=False, reasons=[f"daily trade count unavailable: {exc}"])
        if self.max_daily_trades and count >= self.max_daily_trades:
            return GuardCheck(
                allowed=False,
                reasons=[f"daily trade limit reached ({count}/{self.max_daily_trades})"],
                trades_today=count,
            )
        return GuardCheck(allowed=True, trades_today=count)

    async def try_auto_recover(self) -> bool:
        """Re-enable trading once an automatic disable has served its cooldown.

        Manual disables and the circuit breaker's own cooldown window are respected:
        nothing is re-enabled while ``cooldown_until`` is in the future, and a breaker
        halt is never lifted before its cooldown has been recorded.
        """
        if not self.auto_recover:
            return False
        try:
            guard = await self.store.get_system_guard()
        except Exception as exc:
            logger.error("Auto recovery skipped, guard unreadable: %s", exc)
            return False
        if guard.trading_enabled:
            return False
        if guard.reason and MANUAL_MARKER in guard.reason.lower():
            return False
        if guard.cooldown_until is None and (guard.reason or '').startswith(CIRCUIT_BREAKER_MARKER):
            logger.warning("Breaker halt has no cooldown recorded; leaving trading disabled")
            return False
        if guard.in_cooldown(self.clock()):
            return False
        await self.store.set_trading_enabled(True, f"auto recovered after: {guard.reason}")
        await self.store.reset_guard_errors()
        logger.warning("Trading re-enabled automatically (previous reason: %s)", guard.reason)
        return True

    async def check_all(self, broker: Broker) -> GuardCheck:
        system = await self.check_system_guard()
        recovered = False
        if not system.allowed and system.guard is not None and not system.guard.trading_enabled:
            recovered = await self.try_auto_recover()
            if recovered:
                system = await self.check_system_guard()

        daily = await self.check_daily_trade_limit(broker)
        reasons = system.reasons + daily.reasons
        return GuardCheck(
            allowed=not reasons,
            reasons=reasons,
            recovered=recovered,
            guard=system.guard,
            trades_today=daily.trades_today,
        )

    async def record_failure(self, reason: str) -> GuardState:
        until = self.clock() + self.recovery_cooldown
        guard = await self.store.record_guard_failure(
            self.failure_threshold, until, f"auto disabled after consecutive failures: {reason}"
        )
        if not guard.trading_enabled:
            logger.error(
                "Trading disabled after %d consecutive failures (cooldown until %s)",
                guard.error_count, guard.cooldown_until,
            )
        return guard

    async def record_success(self) -> None:
        await self.store.reset_guard_errors()
