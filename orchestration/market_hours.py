from datetime import datetime, time
from typing import Dict, Tuple
from zoneinfo import ZoneInfo

from core.types import Market

KST = ZoneInfo('Asia/Seoul')
NEW_YORK = ZoneInfo('America/New_York')

MARKET_TZ = {Market.KRX: KST, Market.US: NEW_YORK}

SESSIONS: Dict[Market, Dict[str, Tuple[time, time]]] = {
    Market.KRX: {
        'REGULAR': (time(9, 0), time(15, 30)),
        'EXTENDED': (time(8, 0), time(16, 0)),
        'PREMARKET': (time(8, 0), time(9, 0)),
        'AFTERMARKET': (time(15, 30), time(16, 0)),
    },
    Market.US: {
        'REGULAR': (time(9, 30), time(16, 0)),
        'EXTENDED': (time(4, 0), time(20, 0)),
        'PREMARKET': (time(4, 0), time(9, 30)),
        'AFTERMARKET': (time(16, 0), time(20, 0)),
    },
}


def is_market_open(market: Market, now: datetime, run_mode: str = 'REGULAR', guard_enabled: bool = True) -> bool:
    """Session check in the exchange's local time; holidays are not modelled.

    ``now`` must be timezone-aware. Sessions are half-open: open <= t < close.
    """
    if market is Market.CRYPTO or not guard_enabled or run_mode == 'NO_CHECK':
        return True
    local = now.astimezone(MARKET_TZ[market])
    if local.weekday() >= 5:
        return False
    start, end = SESSIONS[market].get(run_mode, SESSIONS[market]['REGULAR'])
    return start <= local.time() < end
