from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from core.types import UpcomingEvent


class EventRiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class EventRisk:
    level: EventRiskLevel
    size_multiplier: Decimal
    event: Optional[UpcomingEvent] = None

    @property
    def blocks(self) -> bool:
        return self.level is EventRiskLevel.HIGH

    def describe(self) -> str:
        if self.event is None:
            return "no scheduled events"
        return (
            f"{self.level.value} event risk: {self.event.event_type} "
            f"(impact {self.event.impact}) at {self.event.scheduled_at.isoformat()}"
        )


NO_EVENT_RISK = EventRisk(EventRiskLevel.LOW, Decimal('1'))


def assess_event_risk(
    events: Iterable[UpcomingEvent],
    now: datetime,
    window_hours: int = 24,
    high_impact: int = 8,
    medium_impact: int = 5,
    medium_size_multiplier: Decimal = Decimal('0.5'),
) -> EventRisk:
    """Grade the highest-impact event scheduled inside the look-ahead window."""
    horizon = now + timedelta(hours=window_hours)
    in_window = [e for e in events if now <= e.scheduled_at <= horizon]
    if not in_window:
        return NO_EVENT_RISK
    worst = max(in_window, key=lambda e: e.impact)
    if worst.impact >= high_impact:
        return EventRisk(EventRiskLevel.HIGH, Decimal('0'), worst)
    if worst.impact >= medium_impact:
        return EventRisk(EventRiskLevel.MEDIUM, Decimal(str(medium_size_multiplier)), worst)
    return EventRisk(EventRiskLevel.LOW, Decimal('1'), worst)
