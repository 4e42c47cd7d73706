import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from config import config
from config.utils import get_config_section
from core.errors import DataIntegrityError, InvalidInputError
from core.money import ONE, ZERO
from core.types import Market, OrderSide, Position, Signal, UpcomingEvent
from risk.event_risk import NO_EVENT_RISK, EventRisk, EventRiskLevel, assess_event_risk
from risk.position_sizer import PositionSizer, PositionSizeResult
from risk import validators


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountSnapshot:
    """Account state the validator decides against, fetched by the caller."""

    account_size: Decimal
    current_positions_value: Decimal = ZERO
    current_symbol_value: Decimal = ZERO
    upcoming_events: Sequence[UpcomingEvent] = ()
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RiskValidationResult:
    approved: bool
    position_size: Decimal
    position_value: Decimal
    stop_loss: Optional[Decimal]
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    leverage: Optional[Decimal] = None
    exposure: Optional[Decimal] = None
    event_risk: EventRisk = NO_EVENT_RISK
    sizing: Optional[PositionSizeResult] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'approved': self.approved,
            'position_size': self.position_size,
            'position_value': self.position_value,
            'stop_loss': self.stop_loss,
            'violations': list(self.violations),
            'warnings': list(self.warnings),
            'leverage': self.leverage,
            'exposure': self.exposure,
            'event_risk': self.event_risk.level.value,
        }


def default_stop_loss(entry_price: Decimal, side: OrderSide, stop_loss_pct: Decimal) -> Decimal:
    if side is OrderSide.BUY:
        return entry_price * (ONE - stop_loss_pct)
    return entry_price * (ONE + stop_loss_pct)


class RiskValidator:
    """Runs every risk rule over a signal and aggregates the violations.

    Rules are evaluated in order sizing, leverage, exposure, stop distance and
    event risk. A failing rule never prevents the later ones from running, so a
    rejection lists every broken rule at once.
    """

    def __init__(
        self,
        sizer: Optional[PositionSizer] = None,
        stop_loss_pct: Optional[Decimal] = None,
        leverage_limits: Optional[Mapping[str, Decimal]] = None,
        risk_config: Optional[Dict[str, Any]] = None,
        event_config: Optional[Dict[str, Any]] = None,
    ):
        risk_cfg = risk_config if risk_config is not None else get_config_section(config, 'risk')
        event_cfg = event_config if event_config is not None else get_config_section(config, 'event_risk')
        trading_cfg = get_config_section(config, 'trading')

        self.sizer = sizer or PositionSizer()
        self.stop_loss_pct = Decimal(str(
            stop_loss_pct if stop_loss_pct is not None else trading_cfg.get('stop_loss_pct') or '0.05'
        ))
        limits = leverage_limits if leverage_limits is not None else risk_cfg.get('max_leverage_per_symbol')
        self.leverage_limits = {
            str(k).upper(): Decimal(str(v))
            for k, v in (limits if limits is not None else validators.DEFAULT_LEVERAGE_LIMITS).items()
        }
        self.default_max_leverage = Decimal(str(risk_cfg.get('default_max_leverage', validators.DEFAULT_MAX_LEVERAGE)))
        self.max_portfolio_leverage = Decimal(str(
            risk_cfg.get('max_portfolio_leverage', validators.DEFAULT_MAX_PORTFOLIO_LEVERAGE)
        ))
        self.max_symbol_exposure = Decimal(str(risk_cfg.get('max_position_pct', validators.DEFAULT_MAX_SYMBOL_EXPOSURE)))
        self.max_total_exposure = Decimal(str(risk_cfg.get('max_total_exposure_pct', validators.DEFAULT_MAX_TOTAL_EXPOSURE)))

        stop_cfg = risk_cfg.get('stop_distance') or {}
        self.min_stop_pct = Decimal(str(stop_cfg.get('min_pct', validators.DEFAULT_MIN_STOP_PCT)))
        self.max_stop_pct = Decimal(str(stop_cfg.get('max_pct', validators.DEFAULT_MAX_STOP_PCT)))
        self.max_stop_pct_by_market = {
            str(k).upper(): Decimal(str(v)) for k, v in (stop_cfg.get('max_pct_by_market') or {}).items()
        }

        self.event_risk_enabled = bool(event_cfg.get('enabled', True))
        self.event_window_hours = int(event_cfg.get('window_hours', 24))
        self.high_impact = int(event_cfg.get('high_impact', 8))
        self.medium_impact = int(event_cfg.get('medium_impact', 5))
        self.medium_size_multiplier = Decimal(str(event_cfg.get('medium_size_multiplier', '0.5')))

    def max_stop_pct_for(self, market: Market) -> Decimal:
        return self.max_stop_pct_by_market.get(market.value, self.max_stop_pct)

    def validate(self, signal: Signal, snapshot: AccountSnapshot,
                 entry_price: Optional[Decimal] = None) -> RiskValidationResult:
        if not signal.is_actionable:
            return RiskValidationResult(
                approved=False,
                position_size=ZERO,
                position_value=ZERO,
                stop_loss=signal.stop_loss,
                violations=[f"signal is not actionable ({signal.signal_type.value})"],
            )

        entry = entry_price if entry_price is not None else signal.entry_price
        if entry is None:
            raise DataIntegrityError(f"No entry price for signal {signal.id} ({signal.symbol})")
        stop_loss = signal.stop_loss
        if stop_loss is None:
            stop_loss = default_stop_loss(entry, signal.side, self.stop_loss_pct)

        violations: List[str] = []
        warnings: List[str] = []
        leverage = exposure = None

        sizing: Optional[PositionSizeResult] = None
        try:
            sizing = self.sizer.calculate(snapshot.account_size, entry, stop_loss)
        except InvalidInputError as exc:
            violations.append(f"invalid position sizing: {exc}")

        if sizing is not None:
            if sizing.limited_by_max_exposure:
                warnings.append(f"max position size cap applied ({self.sizer.max_position_pct * 100:.0f}%)")

            leverage_check = validators.check_leverage(
                signal.symbol,
                sizing.position_value,
                snapshot.account_size,
                snapshot.current_positions_value,
                limits=self.leverage_limits,
                default_max=self.default_max_leverage,
                max_portfolio=self.max_portfolio_leverage,
            )
            violations.extend(leverage_check.violations)
            leverage = leverage_check.metrics['requested_leverage']

            exposure_check = validators.check_exposure(
                sizing.position_value,
                snapshot.account_size,
                current_total_value=snapshot.current_positions_value,
                current_symbol_value=snapshot.current_symbol_value,
                max_symbol=self.max_symbol_exposure,
                max_total=self.max_total_exposure,
            )
            violations.extend(exposure_check.violations)
            exposure = exposure_check.metrics['new_exposure']

        stop_check = validators.check_stop_distance(
            entry, stop_loss, min_pct=self.min_stop_pct, max_pct=self.max_stop_pct_for(signal.market)
        )
        violations.extend(stop_check.violations)

        event_risk = NO_EVENT_RISK
        if self.event_risk_enabled:
            event_risk = assess_event_risk(
                snapshot.upcoming_events,
                snapshot.now,
                window_hours=self.event_window_hours,
                high_impact=self.high_impact,
                medium_impact=self.medium_impact,
                medium_size_multiplier=self.medium_size_multiplier,
            )
            if event_risk.blocks:
                violations.append(event_risk.describe())
            elif event_risk.level is EventRiskLevel.MEDIUM and sizing is not None:
                sizing = sizing.scaled(event_risk.size_multiplier)
                warnings.append(f"{event_risk.describe()}; size x{event_risk.size_multiplier}")

        return RiskValidationResult(
            approved=not violations,
            position_size=sizing.position_size if sizing else ZERO,
            position_value=sizing.position_value if sizing else ZERO,
            stop_loss=stop_loss,
            violations=violations,
            warnings=warnings,
            leverage=leverage,
            exposure=exposure,
            event_risk=event_risk,
            sizing=sizing,
        )

    def validate_exit(self, signal: Signal, position: Optional[Position],
                      exit_price: Decimal) -> RiskValidationResult:
        """SELL signals close a held long; they only need something to sell."""
        violations = []
        if position is None or not position.is_open:
            violations.append(f"no open position to sell for {signal.symbol}")
        qty = position.qty if position is not None and not violations else ZERO
        return RiskValidationResult(
            approved=not violations,
            position_size=qty,
            position_value=qty * exit_price,
            stop_loss=signal.stop_loss,
            violations=violations,
        )
