import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from core.errors import BrokerAPIError, TransientBrokerError


logger = logging.getLogger(__name__)


class RESTClient:
    """Shared aiohttp session wrapper used by the broker clients.

    HTTP status >= 400 raises ``BrokerAPIError``; connection failures and
    timeouts raise ``TransientBrokerError``.
    """

    def __init__(self, broker: str, base_url: str, timeout_s: float = 10.0):
        self.broker = broker
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method.upper(),
                url,
                params=params or None,
                json=json_body,
                headers=headers or {},
            ) as resp:
                text = await resp.text()
                payload: Any = text
                if "application/json" in resp.headers.get("Content-Type", ""):
                    try:
                        payload = json.loads(text)
                    except ValueError:
                        payload = text

                if resp.status >= 400:
                    code = None
                    msg = None
                    if isinstance(payload, dict):
                        error = payload.get("error") if isinstance(payload.get("error"), dict) else payload
                        code = error.get("name") or error.get("msg_cd") or error.get("code")
                        msg = error.get("message") or error.get("msg1") or error.get("msg")
                    raise BrokerAPIError(self.broker, resp.status, code, msg, text)

                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("%s %s %s failed: %s", self.broker, method.upper(), path, exc)
            raise TransientBrokerError(self.broker, f"{method.upper()} {path} failed: {exc!r}") from exc

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.request("GET", path, params=params, headers=headers)

    async def post(self, path: str, json_body: Optional[Dict[str, Any]] = None,
                   headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.request("POST", path, json_body=json_body, headers=headers)
