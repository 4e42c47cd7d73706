"""Stateless risk checks over a sized order. None of these functions perform I/O."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from core.errors import InvalidInputError
from core.money import ZERO, pct

DEFAULT_LEVERAGE_LIMITS: Dict[str, Decimal] = {'BTC': Decimal('1.5'), 'ETH': Decimal('1.5')}
DEFAULT_MAX_LEVERAGE = Decimal('1.2')
DEFAULT_MAX_PORTFOLIO_LEVERAGE = Decimal('1.0')
DEFAULT_MAX_SYMBOL_EXPOSURE = Decimal('0.25')
DEFAULT_MAX_TOTAL_EXPOSURE = Decimal('1.0')
DEFAULT_MIN_STOP_PCT = Decimal('0.005')
DEFAULT_MAX_STOP_PCT = Decimal('0.05')


@dataclass
class CheckResult:
    valid: bool
    violations: List[str] = field(default_factory=list)
    metrics: Dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def build(cls, violations: List[str], **metrics: Decimal) -> 'CheckResult':
        return cls(valid=not violations, violations=violations, metrics=metrics)


def base_asset(symbol: str) -> str:
    """``KRW-BTC``, ``BTC/KRW`` and ``BTC`` all map to ``BTC``."""
    text = symbol.strip().upper()
    if '-' in text:
        return text.split('-', 1)[1]
    if '/' in text:
        return text.split('/', 1)[0]
    return text


def max_leverage_for(symbol: str, limits: Optional[Mapping[str, Decimal]] = None,
                     default: Decimal = DEFAULT_MAX_LEVERAGE) -> Decimal:
    table = DEFAULT_LEVERAGE_LIMITS if limits is None else limits
    return Decimal(str(table.get(base_asset(symbol), default)))


def _require_account(account_size: Decimal) -> None:
    if account_size <= ZERO:
        raise InvalidInputError(f"account size must be positive, got {account_size}")


def check_leverage(
    symbol: str,
    position_value: Decimal,
    account_size: Decimal,
    current_positions_value: Decimal = ZERO,
    limits: Optional[Mapping[str, Decimal]] = None,
    default_max: Decimal = DEFAULT_MAX_LEVERAGE,
    max_portfolio: Decimal = DEFAULT_MAX_PORTFOLIO_LEVERAGE,
) -> CheckResult:
    _require_account(account_size)
    max_leverage = max_leverage_for(symbol, limits, default_max)
    requested = position_value / account_size
    portfolio = (current_positions_value + position_value) / account_size

    violations = []
    if requested > max_leverage:
        violations.append(
            f"leverage {requested:.2f}x exceeds max {max_leverage:.2f}x for {base_asset(symbol)}"
        )
    if portfolio > max_portfolio:
        violations.append(f"portfolio leverage {portfolio:.2f}x exceeds max {max_portfolio:.2f}x")
    return CheckResult.build(
        violations,
        requested_leverage=requested,
        max_leverage=max_leverage,
        portfolio_leverage=portfolio,
    )


def check_exposure(
    position_value: Decimal,
    account_size: Decimal,
    current_total_value: Decimal = ZERO,
    current_symbol_value: Decimal = ZERO,
    max_symbol: Decimal = DEFAULT_MAX_SYMBOL_EXPOSURE,
    max_total: Decimal = DEFAULT_MAX_TOTAL_EXPOSURE,
) -> CheckResult:
    _require_account(account_size)
    symbol_exposure = (current_symbol_value + position_value) / account_size
    current_exposure = current_total_value / account_size
    new_exposure = (current_total_value + position_value) / account_size

    violations = []
    if symbol_exposure > max_symbol:
        violations.append(
            f"symbol exposure {pct(symbol_exposure)} exceeds max {pct(max_symbol, 0)}"
        )
    if new_exposure > max_total:
        violations.append(
            f"total exposure {pct(new_exposure)} exceeds max {pct(max_total, 0)} (current {pct(current_exposure)})"
        )
    return CheckResult.build(
        violations,
        symbol_exposure=symbol_exposure,
        current_exposure=current_exposure,
        new_exposure=new_exposure,
        max_exposure=max_total,
    )


def check_stop_distance(
    entry_price: Decimal,
    stop_loss: Decimal,
    min_pct: Decimal = DEFAULT_MIN_STOP_PCT,
    max_pct: Decimal = DEFAULT_MAX_STOP_PCT,
) -> CheckResult:
    if entry_price <= ZERO:
        raise InvalidInputError(f"entry price must be positive, got {entry_price}")
    distance = abs(entry_price - stop_loss) / entry_price

    violations = []
    if distance < min_pct:
        violations.append(f"stop loss too tight ({pct(distance)} < {pct(min_pct)})")
    elif distance > max_pct:
        violations.append(f"stop loss too wide ({pct(distance)} > {pct(max_pct)})")
    return CheckResult.build(violations, stop_distance_pct=distance)
