"""Typed view over the ``trading`` and ``brokers`` configuration sections."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List

from config.utils import get_config_section, parse_bool, parse_list
from core.errors import FatalConfigError
from core.types import Broker, Market, broker_for_market, parse_market

RUN_MODES = ('REGULAR', 'EXTENDED', 'PREMARKET', 'AFTERMARKET', 'NO_CHECK')
DEFAULT_INTERVALS = {Market.CRYPTO: 60, Market.KRX: 120, Market.US: 120}


def _decimal(section: Dict[str, Any], key: str, default: str) -> Decimal:
    raw = section.get(key)
    try:
        return Decimal(str(raw)) if raw is not None else Decimal(default)
    except Exception as exc:
        raise FatalConfigError(f"trading.{key} must be numeric, got {raw!r}") from exc


def _int(section: Dict[str, Any], key: str, default: int) -> int:
    raw = section.get(key)
    try:
        return int(raw) if raw is not None else default
    except (TypeError, ValueError) as exc:
        raise FatalConfigError(f"trading.{key} must be an integer, got {raw!r}") from exc


def _bool(section: Dict[str, Any], key: str, default: bool) -> bool:
    try:
        return parse_bool(section.get(key), default)
    except ValueError as exc:
        raise FatalConfigError(f"trading.{key}: {exc}") from exc


@dataclass
class TradingSettings:
    enabled: bool = True
    dry_run: bool = True
    loop_mode: bool = True
    run_mode: str = 'REGULAR'
    market_hours_guard: bool = True
    execute_markets: List[Market] = field(default_factory=lambda: list(Market))
    loop_intervals: Dict[Market, int] = field(default_factory=lambda: dict(DEFAULT_INTERVALS))
    min_confidence: float = 0.7
    max_candidates_per_market: int = 30
    stop_loss_pct: Decimal = Decimal('0.05')
    take_profit_pct: Decimal = Decimal('0.1')
    max_daily_trades: int = 30
    strategy: str = 'ai-signal'

    @classmethod
    def from_config(cls, source: Any) -> 'TradingSettings':
        section = get_config_section(source, 'trading')
        markets_raw = parse_list(section.get('execute_markets'))
        try:
            markets = [parse_market(m) for m in markets_raw] if markets_raw else list(Market)
        except ValueError as exc:
            raise FatalConfigError(f"Invalid execute_markets value: {exc}") from exc
        # De-duplicate while preserving order
        markets = list(dict.fromkeys(markets))

        intervals = dict(DEFAULT_INTERVALS)
        for key, raw in (section.get('loop_interval_sec') or {}).items():
            try:
                market = parse_market(key)
                intervals[market] = int(raw) if raw is not None else DEFAULT_INTERVALS[market]
            except (TypeError, ValueError) as exc:
                raise FatalConfigError(f"Invalid loop interval {key}={raw!r}") from exc

        settings = cls(
            enabled=_bool(section, 'enabled', True),
            dry_run=_bool(section, 'dry_run', True),
            loop_mode=_bool(section, 'loop_mode', True),
            run_mode=str(section.get('run_mode') or 'REGULAR').upper(),
            market_hours_guard=_bool(section, 'market_hours_guard', True),
            execute_markets=markets,
            loop_intervals=intervals,
            min_confidence=float(_decimal(section, 'min_confidence', '0.7')),
            max_candidates_per_market=_int(section, 'max_candidates_per_market', 30),
            stop_loss_pct=_decimal(section, 'stop_loss_pct', '0.05'),
            take_profit_pct=_decimal(section, 'take_profit_pct', '0.1'),
            max_daily_trades=_int(section, 'max_daily_trades', 30),
            strategy=str(section.get('strategy') or 'ai-signal'),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.run_mode not in RUN_MODES:
            raise FatalConfigError(f"run_mode must be one of {RUN_MODES}, got {self.run_mode}")
        if not 0 <= self.min_confidence <= 1:
            raise FatalConfigError("min_confidence must be within [0, 1]")
        if not Decimal('0') < self.stop_loss_pct < Decimal('1'):
            raise FatalConfigError("stop_loss_pct must be within (0, 1)")
        if self.take_profit_pct <= 0:
            raise FatalConfigError("take_profit_pct must be positive")
        if self.max_candidates_per_market < 1:
            raise FatalConfigError("max_candidates_per_market must be at least 1")
        if self.max_daily_trades < 0:
            raise FatalConfigError("max_daily_trades must not be negative")
        for market, seconds in self.loop_intervals.items():
            if seconds <= 0:
                raise FatalConfigError(f"loop interval for {market.value} must be positive")

    @property
    def brokers(self) -> List[Broker]:
        return list(dict.fromkeys(broker_for_market(m) for m in self.execute_markets))

    def interval_for(self, market: Market) -> int:
        return self.loop_intervals.get(market, DEFAULT_INTERVALS[market])


def require_live_credentials(settings: TradingSettings, source: Any) -> None:
    """Refuse to start live trading when a used broker lacks credentials."""
    if settings.dry_run:
        return
    brokers_cfg = get_config_section(source, 'brokers')
    required = {
        Broker.UPBIT: ('upbit', ('access_key', 'secret_key')),
        Broker.KIS: ('kis', ('app_key', 'app_secret', 'account_no')),
    }
    missing = []
    for broker in settings.brokers:
        name, keys = required[broker]
        section = brokers_cfg.get(name) or {}
        missing.extend(f"brokers.{name}.{key}" for key in keys if not section.get(key))
    if missing:
        raise FatalConfigError(f"Live trading requires credentials: {', '.join(missing)}")
