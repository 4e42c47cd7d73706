import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from brokers.base import DRY_RUN_MESSAGE, OrderCosts, OrderRequest, OrderResult
from brokers.rest import RESTClient
from core.errors import BrokerAPIError, DataIntegrityError
from core.money import ZERO, format_qty, optional_decimal, to_decimal
from core.types import Broker, Market, OrderSide, OrderStatus, OrderType


logger = logging.getLogger(__name__)

QUOTE_CURRENCY = "KRW"

# Produces the Authorization headers for a request's parameters.
RequestSigner = Callable[[Dict[str, str]], Dict[str, str]]


def to_market_code(symbol: str) -> str:
    text = symbol.strip().upper()
    if text.startswith(f"{QUOTE_CURRENCY}-"):
        return text
    if "/" in text:
        base, _, quote = text.partition("/")
        return f"{quote or QUOTE_CURRENCY}-{base}"
    return f"{QUOTE_CURRENCY}-{text}"


class UpbitClient:
    """Crypto spot orders against the Upbit REST API (KRW market)."""

    broker = Broker.UPBIT

    def __init__(self, rest: Optional[RESTClient] = None, signer: Optional[RequestSigner] = None,
                 base_url: str = "https://api.upbit.com/v1"):
        self.rest = rest or RESTClient(self.broker.value, base_url)
        self.signer = signer

    async def close(self) -> None:
        await self.rest.close()

    async def get_current_price(self, market: Market, symbol: str) -> Optional[Decimal]:
        if market is not Market.CRYPTO:
            return None
        code = to_market_code(symbol)
        payload = await self.rest.get("/ticker", params={"markets": code})
        if not isinstance(payload, list):
            raise DataIntegrityError(f"Upbit ticker for {code} returned {type(payload).__name__}")
        if not payload:
            return None
        price = to_decimal(payload[0].get("trade_price"), f"{code}.trade_price")
        if price <= ZERO:
            raise DataIntegrityError(f"Upbit ticker for {code} returned non-positive price {price}")
        return price

    def _build_order_params(self, request: OrderRequest) -> Dict[str, str]:
        params = {
            "market": to_market_code(request.symbol),
            "side": "bid" if request.side is OrderSide.BUY else "ask",
        }
        if request.order_type is OrderType.LIMIT:
            if request.price is None:
                raise ValueError("LIMIT order requires a price")
            params.update(ord_type="limit", volume=format_qty(request.quantity), price=format(request.price, "f"))
        elif request.side is OrderSide.BUY:
            # Market buys are expressed as the KRW amount to spend.
            if request.price is None:
                raise ValueError("market BUY requires a reference price")
            params.update(ord_type="price", price=format((request.price * request.quantity).quantize(Decimal("1")), "f"))
        else:
            params.update(ord_type="market", volume=format_qty(request.quantity))
        if request.idempotency_key:
            params["identifier"] = request.idempotency_key
        return params

    async def place_order(self, request: OrderRequest) -> OrderResult:
        if request.market is not Market.CRYPTO:
            return OrderResult.for_request(
                self.broker, request, OrderStatus.SKIPPED, f"Upbit does not trade {request.market.value}"
            )
        if request.dry_run:
            return OrderResult.for_request(self.broker, request, OrderStatus.SKIPPED, DRY_RUN_MESSAGE)
        if self.signer is None:
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, "Upbit request signer not configured")

        try:
            params = self._build_order_params(request)
        except ValueError as exc:
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, str(exc))

        try:
            payload = await self.rest.post("/orders", json_body=params, headers=self.signer(params))
        except BrokerAPIError as exc:
            if exc.transient:
                raise
            logger.error("Upbit order rejected for %s: %s", params["market"], exc)
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, str(exc), raw={"body": exc.body})

        if not isinstance(payload, dict) or not payload.get("uuid"):
            raise DataIntegrityError(f"Upbit order response without uuid: {payload!r}")
        return OrderResult.for_request(
            self.broker,
            request,
            OrderStatus.SUCCESS,
            f"order accepted ({payload.get('state')})",
            order_id=str(payload["uuid"]),
            executed_qty=optional_decimal(payload.get("executed_volume"), "executed_volume"),
            executed_price=optional_decimal(payload.get("avg_price"), "avg_price"),
            raw=payload,
        )

    async def fetch_order_costs(self, order_id: str) -> Optional[OrderCosts]:
        if self.signer is None:
            return None
        params = {"uuid": order_id}
        payload = await self.rest.get("/order", params=params, headers=self.signer(params))
        if not isinstance(payload, dict):
            raise DataIntegrityError(f"Upbit order detail for {order_id} returned {type(payload).__name__}")
        return OrderCosts(
            order_id=order_id,
            fee=self._resolve_fee(payload),
            state=payload.get("state"),
            executed_price=self._resolve_avg_price(payload),
        )

    @staticmethod
    def _resolve_fee(payload: Dict[str, Any]) -> Optional[Decimal]:
        paid = optional_decimal(payload.get("paid_fee"), "paid_fee")
        if paid is not None:
            return paid
        fees = [optional_decimal(t.get("fee"), "trade.fee") for t in payload.get("trades") or []]
        fees = [fee for fee in fees if fee is not None]
        return sum(fees, ZERO) if fees else None

    @staticmethod
    def _resolve_avg_price(payload: Dict[str, Any]) -> Optional[Decimal]:
        volume = ZERO
        funds = ZERO
        for trade in payload.get("trades") or []:
            volume += to_decimal(trade.get("volume"), "trade.volume")
            funds += to_decimal(trade.get("funds"), "trade.funds")
        if volume <= ZERO:
            return None
        return funds / volume
