import logging
from typing import Any, Dict, Iterable, Optional

from brokers.base import BrokerClient
from brokers.kis import KISClient
from brokers.upbit import RequestSigner, UpbitClient
from config.utils import get_config_section
from core.errors import FatalConfigError, UnsupportedBrokerError
from core.types import Broker


logger = logging.getLogger(__name__)


class BrokerRegistry:
    """Broker clients keyed by ``Broker``."""

    def __init__(self, clients: Optional[Dict[Broker, BrokerClient]] = None):
        self._clients: Dict[Broker, BrokerClient] = dict(clients or {})

    def register(self, broker: Broker, client: BrokerClient) -> None:
        self._clients[broker] = client

    def get(self, broker: Broker) -> BrokerClient:
        try:
            return self._clients[broker]
        except KeyError:
            raise UnsupportedBrokerError(broker) from None

    def __contains__(self, broker: Broker) -> bool:
        return broker in self._clients

    def brokers(self) -> Iterable[Broker]:
        return list(self._clients)

    async def close(self) -> None:
        for broker, client in self._clients.items():
            try:
                await client.close()
            except Exception as exc:
                logger.warning("Closing %s client failed: %s", broker.value, exc)


def build_registry(source: Any, brokers: Iterable[Broker], dry_run: bool,
                   upbit_signer: Optional[RequestSigner] = None) -> BrokerRegistry:
    cfg = get_config_section(source, 'brokers')
    registry = BrokerRegistry()
    for broker in brokers:
        if broker is Broker.UPBIT:
            upbit_cfg = cfg.get('upbit') or {}
            if not dry_run and upbit_signer is None:
                raise FatalConfigError("Live Upbit trading requires a request signer")
            registry.register(broker, UpbitClient(
                signer=upbit_signer,
                base_url=upbit_cfg.get('base_url') or "https://api.upbit.com/v1",
            ))
        elif broker is Broker.KIS:
            kis_cfg = cfg.get('kis') or {}
            registry.register(broker, KISClient(
                app_key=kis_cfg.get('app_key'),
                app_secret=kis_cfg.get('app_secret'),
                account_no=kis_cfg.get('account_no'),
                product_code=str(kis_cfg.get('product_code') or '01'),
                env=kis_cfg.get('env') or 'REAL',
                base_url=kis_cfg.get('base_url') or "https://openapi.koreainvestment.com:9443",
            ))
    return registry
