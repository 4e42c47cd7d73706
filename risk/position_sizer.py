from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
import logging

from config import config
from config.utils import get_config_section
from core.errors import InvalidInputError
from core.money import CRYPTO_QTY_STEP, ONE, ZERO, quantize_down
from core.types import Market


logger = logging.getLogger(__name__)

DEFAULT_RISK_PCT = Decimal('0.01')
DEFAULT_MAX_POSITION_PCT = Decimal('0.25')


@dataclass(frozen=True)
class PositionSizeResult:
    position_size: Decimal
    position_value: Decimal
    risk_amount: Decimal
    max_position_value: Decimal
    limited_by_max_exposure: bool

    def scaled(self, factor: Decimal) -> 'PositionSizeResult':
        return PositionSizeResult(
            position_size=self.position_size * factor,
            position_value=self.position_value * factor,
            risk_amount=self.risk_amount,
            max_position_value=self.max_position_value,
            limited_by_max_exposure=self.limited_by_max_exposure,
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            'position_size': self.position_size,
            'position_value': self.position_value,
            'risk_amount': self.risk_amount,
            'max_position_value': self.max_position_value,
            'limited_by_max_exposure': self.limited_by_max_exposure,
        }


class PositionSizer:
    """Fixed-fractional sizing: risk a fraction of the account between entry and stop."""

    def __init__(self, risk_pct: Optional[Decimal] = None, max_position_pct: Optional[Decimal] = None):
        risk_cfg = get_config_section(config, 'risk')
        self.risk_pct = Decimal(str(risk_pct if risk_pct is not None else risk_cfg.get('risk_pct', DEFAULT_RISK_PCT)))
        self.max_position_pct = Decimal(str(
            max_position_pct if max_position_pct is not None
            else risk_cfg.get('max_position_pct', DEFAULT_MAX_POSITION_PCT)
        ))
        if not ZERO < self.max_position_pct <= ONE:
            raise InvalidInputError(f"max_position_pct must be within (0, 1], got {self.max_position_pct}")

    def calculate(self, account_size: Decimal, entry_price: Decimal, stop_loss: Decimal,
                  risk_pct: Optional[Decimal] = None) -> PositionSizeResult:
        risk_pct = self.risk_pct if risk_pct is None else Decimal(str(risk_pct))
        if account_size <= ZERO:
            raise InvalidInputError(f"account size must be positive, got {account_size}")
        if entry_price <= ZERO:
            raise InvalidInputError(f"entry price must be positive, got {entry_price}")
        if not ZERO < risk_pct <= ONE:
            raise InvalidInputError(f"risk pct must be within (0, 1], got {risk_pct}")
        if stop_loss == entry_price:
            raise InvalidInputError("stop loss equals entry price")

        risk_amount = account_size * risk_pct
        stop_distance = abs(entry_price - stop_loss)
        # entry * (distance / entry) reduces to the distance itself
        position_size = risk_amount / stop_distance
        position_value = position_size * entry_price

        max_position_value = account_size * self.max_position_pct
        limited = position_value > max_position_value
        if limited:
            position_value = max_position_value
            position_size = position_value / entry_price
            logger.debug(
                "Position capped at %s (%.0f%% of account)", max_position_value, self.max_position_pct * 100
            )

        return PositionSizeResult(
            position_size=position_size,
            position_value=position_value,
            risk_amount=risk_amount,
            max_position_value=max_position_value,
            limited_by_max_exposure=limited,
        )


def round_order_quantity(market: Market, qty: Decimal) -> Decimal:
    """Whole shares for equities, 8 decimals for crypto; always rounds down."""
    if market is Market.CRYPTO:
        return quantize_down(qty, CRYPTO_QTY_STEP)
    return quantize_down(qty, ONE)
