import asyncio
import logging
import time
from decimal import Decimal
from typing import Dict, Optional

from brokers.base import DRY_RUN_MESSAGE, OrderRequest, OrderResult
from brokers.rest import RESTClient
from core.errors import BrokerAPIError, DataIntegrityError, FatalConfigError
from core.money import ZERO, to_decimal
from core.types import Broker, Market, OrderSide, OrderStatus, OrderType


logger = logging.getLogger(__name__)

PRICE_PATH = "/uapi/domestic-stock/v1/quotations/inquire-price"
ORDER_PATH = "/uapi/domestic-stock/v1/trading/order-cash"
TOKEN_PATH = "/oauth2/tokenP"
PAPER_ENVS = {"PAPER", "MOCK", "SIM"}
# Refresh the access token this many seconds before it expires.
TOKEN_REFRESH_MARGIN_S = 60


class KISClient:
    """Korean cash-equity orders through the Korea Investment & Securities open API."""

    broker = Broker.KIS

    def __init__(
        self,
        app_key: Optional[str],
        app_secret: Optional[str],
        account_no: Optional[str],
        product_code: str = "01",
        env: str = "REAL",
        rest: Optional[RESTClient] = None,
        base_url: str = "https://openapi.koreainvestment.com:9443",
    ):
        self.app_key = app_key
        self.app_secret = app_secret
        self.account_no = account_no
        self.product_code = product_code
        self.paper = str(env or "REAL").upper() in PAPER_ENVS
        self.rest = rest or RESTClient(self.broker.value, base_url)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        await self.rest.close()

    def _tr_id(self, side: OrderSide) -> str:
        prefix = "V" if self.paper else "T"
        suffix = "0802U" if side is OrderSide.BUY else "0801U"
        return f"{prefix}TTC{suffix}"

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN_S:
                return self._token
            if not self.app_key or not self.app_secret:
                raise FatalConfigError("KIS app key/secret required")
            payload = await self.rest.post(
                TOKEN_PATH,
                json_body={
                    "grant_type": "client_credentials",
                    "appkey": self.app_key,
                    "appsecret": self.app_secret,
                },
            )
            if not isinstance(payload, dict) or not payload.get("access_token"):
                raise DataIntegrityError("KIS token response without access_token")
            self._token = str(payload["access_token"])
            self._token_expires_at = time.time() + float(payload.get("expires_in", 86400))
            logger.info("KIS access token refreshed (paper=%s)", self.paper)
            return self._token

    async def _headers(self, tr_id: str) -> Dict[str, str]:
        token = await self._access_token()
        return {
            "content-type": "application/json; charset=utf-8",
            "authorization": f"Bearer {token}",
            "appkey": self.app_key or "",
            "appsecret": self.app_secret or "",
            "tr_id": tr_id,
            "custtype": "P",
        }

    async def get_current_price(self, market: Market, symbol: str) -> Optional[Decimal]:
        if market is not Market.KRX:
            return None
        payload = await self.rest.get(
            PRICE_PATH,
            params={"FID_COND_MRKT_DIV_CODE": "J", "FID_INPUT_ISCD": symbol},
            headers=await self._headers("FHKST01010100"),
        )
        if not isinstance(payload, dict):
            raise DataIntegrityError(f"KIS price for {symbol} returned {type(payload).__name__}")
        if payload.get("rt_cd") not in (None, "0"):
            logger.warning("KIS price lookup for %s failed: %s %s", symbol, payload.get("msg_cd"), payload.get("msg1"))
            return None
        output = payload.get("output") or {}
        raw_price = output.get("stck_prpr")
        if raw_price in (None, ""):
            return None
        price = to_decimal(raw_price, f"{symbol}.stck_prpr")
        return price if price > ZERO else None

    async def place_order(self, request: OrderRequest) -> OrderResult:
        if request.market is not Market.KRX:
            return OrderResult.for_request(
                self.broker, request, OrderStatus.SKIPPED, f"KIS client does not trade {request.market.value}"
            )
        if request.dry_run:
            return OrderResult.for_request(self.broker, request, OrderStatus.SKIPPED, DRY_RUN_MESSAGE)
        if request.order_type is OrderType.LIMIT and request.price is None:
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, "LIMIT order requires a price")
        if not self.account_no:
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, "KIS account number not configured")

        is_limit = request.order_type is OrderType.LIMIT
        body = {
            "CANO": self.account_no,
            "ACNT_PRDT_CD": self.product_code,
            "PDNO": request.symbol,
            "ORD_DVSN": "00" if is_limit else "01",
            "ORD_QTY": str(int(request.quantity)),
            "ORD_UNPR": str(int(request.price)) if is_limit else "0",
        }
        try:
            payload = await self.rest.post(ORDER_PATH, json_body=body, headers=await self._headers(self._tr_id(request.side)))
        except BrokerAPIError as exc:
            if exc.transient:
                raise
            logger.error("KIS order rejected for %s: %s", request.symbol, exc)
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, str(exc), raw={"body": exc.body})

        if not isinstance(payload, dict):
            raise DataIntegrityError(f"KIS order response is {type(payload).__name__}")
        if payload.get("rt_cd") != "0":
            message = f"{payload.get('msg_cd')}: {payload.get('msg1')}"
            return OrderResult.for_request(self.broker, request, OrderStatus.FAILED, message, raw=payload)

        output = payload.get("output") or {}
        return OrderResult.for_request(
            self.broker,
            request,
            OrderStatus.SUCCESS,
            str(payload.get("msg1") or "order accepted"),
            order_id=output.get("ODNO"),
            raw=payload,
        )
