import logging
from datetime import datetime
from typing import Optional

from compliance.builders import build_outcome
from core.money import ZERO, optional_decimal
from core.types import OrderSide


logger = logging.getLogger(__name__)


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class OutcomeTracker:
    """Closes open ACE records once the position they opened has been exited."""

    def __init__(self, store, ace_logger, batch_size: int = 100):
        self.store = store
        self.ace_logger = ace_logger
        self.batch_size = batch_size

    async def run_once(self) -> int:
        closed = 0
        for record in await self.store.fetch_open_ace_logs(self.batch_size):
            try:
                if await self._close_record(record):
                    closed += 1
            except Exception:
                logger.exception("Outcome tracking failed for ACE record %s", record.id)
        if closed:
            logger.info("Recorded %d ACE outcomes", closed)
        return closed

    async def _close_record(self, record) -> bool:
        execution = record.execution or {}
        side = OrderSide(execution.get('side', OrderSide.BUY.value))
        entry_time = _parse_time(execution.get('timestamp')) or record.created_at
        exit_trade = await self.store.find_exit_trade(
            record.broker, record.market, record.symbol, side.opposite, entry_time
        )
        if exit_trade is None or exit_trade.price is None:
            return False

        entry_trade = None
        if execution.get('trade_id') is not None:
            entry_trade = await self.store.get_trade(int(execution['trade_id']))
        entry_price = optional_decimal(execution.get('actual_entry'), 'actual_entry')
        if entry_trade is not None and entry_trade.price is not None:
            entry_price = entry_trade.price
        qty = optional_decimal(execution.get('size'), 'size')
        if entry_price is None or qty is None:
            logger.warning("ACE record %s lacks entry price or size; cannot compute outcome", record.id)
            return False

        outcome = build_outcome(
            side=side,
            entry_price=entry_price,
            exit_price=exit_trade.price,
            qty=min(qty, exit_trade.qty),
            entry_time=entry_time,
            exit_time=exit_trade.executed_at,
            entry_fee=(entry_trade.fee if entry_trade and entry_trade.fee is not None else ZERO),
            entry_tax=(entry_trade.tax if entry_trade and entry_trade.tax is not None else ZERO),
            exit_fee=exit_trade.fee if exit_trade.fee is not None else ZERO,
            exit_tax=exit_trade.tax if exit_trade.tax is not None else ZERO,
            exit_reason=str(exit_trade.metadata.get('reason') or exit_trade.metadata.get('source') or ''),
        )
        outcome['exit_trade_id'] = exit_trade.id
        return await self.ace_logger.record_outcome(record.id, outcome)
