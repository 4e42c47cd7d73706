from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from core.types import Broker, Market, OrderSide, OrderStatus, OrderType

DRY_RUN_MESSAGE = "DRY_RUN enabled: order not sent"


@dataclass
class OrderRequest:
    market: Market
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    reason: str = ''
    dry_run: bool = True
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderResult:
    """Normalized broker answer for one order attempt."""

    broker: Broker
    market: Market
    symbol: str
    side: OrderSide
    order_type: OrderType
    requested_qty: Decimal
    status: OrderStatus
    dry_run: bool
    message: str = ''
    requested_price: Optional[Decimal] = None
    order_id: Optional[str] = None
    executed_qty: Optional[Decimal] = None
    executed_price: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_request(cls, broker: Broker, request: OrderRequest, status: OrderStatus,
                    message: str, **extra: Any) -> 'OrderResult':
        return cls(
            broker=broker,
            market=request.market,
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            requested_qty=request.quantity,
            requested_price=request.price,
            status=status,
            dry_run=request.dry_run,
            message=message,
            **extra,
        )

    @property
    def succeeded(self) -> bool:
        return self.status is OrderStatus.SUCCESS

    def as_dict(self) -> Dict[str, Any]:
        return {
            'broker': self.broker.value,
            'market': self.market.value,
            'symbol': self.symbol,
            'side': self.side.value,
            'order_type': self.order_type.value,
            'requested_qty': self.requested_qty,
            'requested_price': self.requested_price,
            'status': self.status.value,
            'dry_run': self.dry_run,
            'order_id': self.order_id,
            'executed_qty': self.executed_qty,
            'executed_price': self.executed_price,
            'message': self.message,
        }


@dataclass(frozen=True)
class OrderCosts:
    order_id: str
    fee: Optional[Decimal]
    tax: Decimal = Decimal('0')
    state: Optional[str] = None
    executed_price: Optional[Decimal] = None

    @property
    def final(self) -> bool:
        return self.state in (None, 'done', 'cancel')


@runtime_checkable
class BrokerClient(Protocol):
    broker: Broker

    async def get_current_price(self, market: Market, symbol: str) -> Optional[Decimal]:
        ...

    async def place_order(self, request: OrderRequest) -> OrderResult:
        ...

    async def close(self) -> None:
        ...
