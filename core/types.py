from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from core.errors import InvalidInputError
from core.money import ZERO


class Market(Enum):
    CRYPTO = "CRYPTO"
    KRX = "KRX"
    US = "US"


class Broker(Enum):
    KIS = "KIS"
    UPBIT = "UPBIT"


class SignalType(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> 'OrderSide':
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TradeStatus(Enum):
    FILLED = "filled"
    FAILED = "failed"
    SIMULATED = "simulated"


MARKET_TO_BROKER = {
    Market.CRYPTO: Broker.UPBIT,
    Market.KRX: Broker.KIS,
    Market.US: Broker.KIS,
}

_MARKET_ALIASES = {'KR': Market.KRX}


def parse_market(value: Any) -> Market:
    if isinstance(value, Market):
        return value
    text = str(value).strip().upper()
    if text in _MARKET_ALIASES:
        return _MARKET_ALIASES[text]
    return Market(text)


def parse_broker(value: Any) -> Broker:
    if isinstance(value, Broker):
        return value
    return Broker(str(value).strip().upper())


def broker_for_market(market: Market) -> Broker:
    return MARKET_TO_BROKER[market]


@dataclass(frozen=True)
class Signal:
    id: str
    symbol: str
    market: Market
    broker: Broker
    signal_type: SignalType
    confidence: float
    entry_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    reason: str = ''
    indicators: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None

    @property
    def is_actionable(self) -> bool:
        return self.signal_type in (SignalType.BUY, SignalType.SELL)

    @property
    def side(self) -> Optional[OrderSide]:
        if self.signal_type is SignalType.BUY:
            return OrderSide.BUY
        if self.signal_type is SignalType.SELL:
            return OrderSide.SELL
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'market': self.market.value,
            'broker': self.broker.value,
            'signal_type': self.signal_type.value,
            'confidence': self.confidence,
            'entry_price': self.entry_price,
            'target_price': self.target_price,
            'stop_loss': self.stop_loss,
            'reason': self.reason,
            'created_at': self.created_at,
        }


@dataclass(frozen=True)
class Position:
    broker: Broker
    market: Market
    symbol: str
    qty: Decimal
    avg_price: Decimal

    def __post_init__(self):
        if self.qty < ZERO:
            raise InvalidInputError(f"Position {self.symbol} has negative qty {self.qty}")

    @property
    def is_open(self) -> bool:
        return self.qty > ZERO

    @property
    def cost_basis(self) -> Decimal:
        return self.qty * self.avg_price


@dataclass(frozen=True)
class AccountCash:
    broker: Broker
    total: Decimal
    cash_available: Optional[Decimal] = None

    @property
    def sizing_base(self) -> Decimal:
        return self.cash_available if self.cash_available is not None else self.total


@dataclass
class Trade:
    broker: Broker
    market: Market
    symbol: str
    side: OrderSide
    qty: Decimal
    status: TradeStatus
    price: Optional[Decimal] = None
    order_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    fee: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    executed_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def value(self) -> Optional[Decimal]:
        if self.price is None:
            return None
        return self.qty * self.price


@dataclass(frozen=True)
class UpcomingEvent:
    symbol: str
    event_type: str
    scheduled_at: datetime
    impact: int
    title: str = ''
