from typing import Optional


class TradingError(Exception):
    """Base class for failures raised by the trade executor."""


class InvalidInputError(TradingError, ValueError):
    """Arguments that make a calculation undefined (e.g. stop loss equal to entry)."""


class DataIntegrityError(TradingError):
    """Required data is missing or malformed; never to be read as zero or safe."""


class FatalConfigError(TradingError):
    """Configuration or credentials are unusable; the process must not start."""


class UnsupportedBrokerError(TradingError):
    def __init__(self, broker: object):
        self.broker = broker
        super().__init__(f"No broker client registered for {broker}")


class BrokerError(TradingError):
    def __init__(self, broker: str, message: str):
        self.broker = broker
        super().__init__(f"[{broker}] {message}")

    @property
    def transient(self) -> bool:
        return False


class TransientBrokerError(BrokerError):
    """Network failure, timeout, rate limit or 5xx answer; safe to retry."""

    @property
    def transient(self) -> bool:
        return True


class BrokerAPIError(BrokerError):
    def __init__(self, broker: str, status: int, code: Optional[str], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(broker, f"API error (status={status}, code={code}, msg={msg})")

    @property
    def transient(self) -> bool:
        return self.status == 429 or self.status >= 500
