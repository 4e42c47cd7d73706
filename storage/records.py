from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from core.types import Broker, Market


@dataclass(frozen=True)
class GuardState:
    trading_enabled: bool
    reason: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    error_count: int = 0
    updated_at: Optional[datetime] = None

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until


@dataclass
class RiskEvent:
    event_type: str
    violation_type: str
    severity: str
    symbol: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AceRecord:
    broker: Broker
    market: Market
    symbol: str
    aspiration: Dict[str, Any]
    capability: Dict[str, Any]
    execution: Dict[str, Any]
    outcome: Optional[Dict[str, Any]] = None
    signal_id: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'broker': self.broker.value,
            'market': self.market.value,
            'symbol': self.symbol,
            'signal_id': self.signal_id,
            'aspiration': self.aspiration,
            'capability': self.capability,
            'execution': self.execution,
            'outcome': self.outcome,
            'created_at': self.created_at,
        }
