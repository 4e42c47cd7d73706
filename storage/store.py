import json
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from config import config
from config.utils import get_config_section
from core.errors import DataIntegrityError
from core.money import ZERO, optional_decimal, to_decimal
from core.types import (
    AccountCash,
    Broker,
    Market,
    OrderSide,
    Position,
    Signal,
    SignalType,
    Trade,
    TradeStatus,
    UpcomingEvent,
    parse_broker,
    parse_market,
)
from storage.records import AceRecord, GuardState, RiskEvent


logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name('schema.sql')


def _dumps(payload: Any) -> str:
    return json.dumps(payload or {}, default=str)


def _loads(raw: Any) -> Any:
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)


class TradingStore:
    """asyncpg-backed persistence for signals, positions, trades, guards and audit logs."""

    def __init__(self, db_config: Optional[Dict[str, Any]] = None):
        self.db_config = db_config or get_config_section(config, 'database')
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        db = self.db_config
        self.pool = await asyncpg.create_pool(
            host=db.get('host'),
            port=int(db.get('port') or 5432),
            database=db.get('database'),
            user=db.get('user'),
            password=db.get('password'),
            min_size=int(db.get('min_pool_size', 2)),
            max_size=int(db.get('max_pool_size', 10)),
        )
        logger.info("Connected to PostgreSQL %s/%s", db.get('host'), db.get('database'))

    async def apply_schema(self):
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_PATH.read_text())

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    # Signals

    async def fetch_unconsumed_signals(self, market: Market, min_confidence: float, limit: int) -> List[Signal]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT id, symbol, market, broker, signal_type, entry_price, target_price,
                          stop_loss, confidence, reason, indicators, created_at, consumed_at
                   FROM trading_signals
                   WHERE market = $1 AND consumed_at IS NULL AND confidence >= $2
                   ORDER BY confidence DESC, created_at ASC
                   LIMIT $3''',
                market.value, min_confidence, limit,
            )
        return [self._row_to_signal(row) for row in rows]

    @staticmethod
    def _row_to_signal(row) -> Signal:
        return Signal(
            id=str(row['id']),
            symbol=row['symbol'],
            market=parse_market(row['market']),
            broker=parse_broker(row['broker']),
            signal_type=SignalType(row['signal_type']),
            confidence=float(row['confidence']),
            entry_price=row['entry_price'],
            target_price=row['target_price'],
            stop_loss=row['stop_loss'],
            reason=row['reason'] or '',
            indicators=_loads(row['indicators']) or {},
            created_at=row['created_at'],
            consumed_at=row['consumed_at'],
        )

    async def mark_signal_consumed(self, signal_id: str) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                'UPDATE trading_signals SET consumed_at = now() WHERE id = $1 AND consumed_at IS NULL',
                signal_id,
            )
        return status.endswith(' 1')

    # Account and positions

    async def get_account_cash(self, broker: Broker) -> AccountCash:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT cash_available, total FROM account_cash WHERE broker = $1', broker.value
            )
        if row is None:
            raise DataIntegrityError(f"No account_cash row for {broker.value}")
        return AccountCash(
            broker=broker,
            total=to_decimal(row['total'], f"{broker.value}.total"),
            cash_available=optional_decimal(row['cash_available'], f"{broker.value}.cash_available"),
        )

    async def get_positions(self, broker: Broker, market: Optional[Market] = None,
                            symbol: Optional[str] = None) -> List[Position]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT broker, market, symbol, qty, avg_price FROM positions
                   WHERE broker = $1 AND qty > 0
                     AND ($2::text IS NULL OR market = $2)
                     AND ($3::text IS NULL OR symbol = $3)
                   ORDER BY market, symbol''',
                broker.value, market.value if market else None, symbol,
            )
        return [
            Position(
                broker=broker,
                market=parse_market(row['market']),
                symbol=row['symbol'],
                qty=row['qty'],
                avg_price=row['avg_price'],
            )
            for row in rows
        ]

    async def get_latest_price(self, market: Market, symbol: str) -> Optional[Decimal]:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                '''SELECT close FROM market_prices WHERE market = $1 AND symbol = $2
                   ORDER BY ts DESC LIMIT 1''',
                market.value, symbol,
            )
        return value

    async def get_current_position_value(self, broker: Broker, market: Optional[Market] = None,
                                         symbol: Optional[str] = None) -> Decimal:
        """Mark-to-market value of open positions; a position without a price is an error."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT p.market, p.symbol, p.qty, px.close
                   FROM positions p
                   LEFT JOIN LATERAL (
                       SELECT close FROM market_prices mp
                       WHERE mp.market = p.market AND mp.symbol = p.symbol
                       ORDER BY ts DESC LIMIT 1
                   ) px ON TRUE
                   WHERE p.broker = $1 AND p.qty > 0
                     AND ($2::text IS NULL OR p.market = $2)
                     AND ($3::text IS NULL OR p.symbol = $3)''',
                broker.value, market.value if market else None, symbol,
            )
        total = ZERO
        missing = [f"{row['market']}:{row['symbol']}" for row in rows if row['close'] is None]
        if missing:
            raise DataIntegrityError(f"No price for open positions: {', '.join(missing)}")
        for row in rows:
            total += row['qty'] * row['close']
        return total

    async def apply_fill(self, broker: Broker, market: Market, symbol: str, side: OrderSide,
                         qty: Decimal, price: Optional[Decimal]) -> Optional[Position]:
        """Grow (BUY) or shrink (SELL) a position; a position reduced to zero is deleted."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    '''SELECT qty, avg_price FROM positions
                       WHERE broker = $1 AND market = $2 AND symbol = $3 FOR UPDATE''',
                    broker.value, market.value, symbol,
                )
                current_qty = row['qty'] if row else ZERO
                current_avg = row['avg_price'] if row else ZERO
                if side is OrderSide.BUY:
                    if price is None:
                        raise DataIntegrityError(f"BUY fill for {symbol} without price")
                    new_qty = current_qty + qty
                    new_avg = (current_qty * current_avg + qty * price) / new_qty
                else:
                    new_qty = max(current_qty - qty, ZERO)
                    new_avg = current_avg
                if new_qty == ZERO:
                    await conn.execute(
                        'DELETE FROM positions WHERE broker = $1 AND market = $2 AND symbol = $3',
                        broker.value, market.value, symbol,
                    )
                    return None
                await conn.execute(
                    '''INSERT INTO positions (broker, market, symbol, qty, avg_price, updated_at)
                       VALUES ($1, $2, $3, $4, $5, now())
                       ON CONFLICT (broker, market, symbol) DO UPDATE SET
                           qty = EXCLUDED.qty,
                           avg_price = EXCLUDED.avg_price,
                           updated_at = now()''',
                    broker.value, market.value, symbol, new_qty, new_avg,
                )
        return Position(broker=broker, market=market, symbol=symbol, qty=new_qty, avg_price=new_avg)

    # Trades

    async def insert_trade(self, trade: Trade) -> Optional[int]:
        """Insert a trade row; returns None when the idempotency key was already recorded."""
        async with self.pool.acquire() as conn:
            trade_id = await conn.fetchval(
                '''INSERT INTO trades (broker, market, symbol, side, qty, price, status, order_id,
                                       idempotency_key, fee_amount, tax_amount, metadata, executed_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, COALESCE($13, now()))
                   ON CONFLICT (idempotency_key) DO NOTHING
                   RETURNING id''',
                trade.broker.value, trade.market.value, trade.symbol, trade.side.value, trade.qty,
                trade.price, trade.status.value, trade.order_id, trade.idempotency_key,
                trade.fee, trade.tax, _dumps(trade.metadata), trade.executed_at,
            )
        if trade_id is None:
            logger.warning("Trade %s already recorded; skipping duplicate", trade.idempotency_key)
        return trade_id

    @staticmethod
    def _row_to_trade(row) -> Trade:
        return Trade(
            id=row['id'],
            broker=parse_broker(row['broker']),
            market=parse_market(row['market']),
            symbol=row['symbol'],
            side=OrderSide(row['side']),
            qty=row['qty'],
            price=row['price'],
            status=TradeStatus(row['status']),
            order_id=row['order_id'],
            idempotency_key=row['idempotency_key'],
            fee=row['fee_amount'],
            tax=row['tax_amount'],
            metadata=_loads(row['metadata']) or {},
            executed_at=row['executed_at'],
        )

    async def get_filled_trades_since(self, broker: Broker, since: datetime) -> List[Trade]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT * FROM trades WHERE broker = $1 AND status = 'filled' AND executed_at >= $2
                   ORDER BY executed_at''',
                broker.value, since,
            )
        return [self._row_to_trade(row) for row in rows]

    async def count_trades_since(self, broker: Broker, since: datetime) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT count(*) FROM trades WHERE broker = $1 AND status = 'filled' AND executed_at >= $2",
                broker.value, since,
            )

    async def find_exit_trade(self, broker: Broker, market: Market, symbol: str,
                              side: OrderSide, after: datetime) -> Optional[Trade]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''SELECT * FROM trades
                   WHERE broker = $1 AND market = $2 AND symbol = $3 AND side = $4
                     AND status = 'filled' AND executed_at > $5
                   ORDER BY executed_at ASC LIMIT 1''',
                broker.value, market.value, symbol, side.value, after,
            )
        return self._row_to_trade(row) if row else None

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM trades WHERE id = $1', trade_id)
        return self._row_to_trade(row) if row else None

    async def fetch_trades_missing_costs(self, since: datetime, limit: int) -> List[Trade]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT * FROM trades
                   WHERE status = 'filled' AND executed_at >= $1
                     AND order_id IS NOT NULL AND order_id <> ''
                     AND cost_source IS NULL
                   ORDER BY executed_at ASC LIMIT $2''',
                since, limit,
            )
        return [self._row_to_trade(row) for row in rows]

    async def update_trade_costs(self, trade_id: int, fee: Optional[Decimal], tax: Optional[Decimal],
                                 source: str, executed_price: Optional[Decimal] = None) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''UPDATE trades SET fee_amount = $2, tax_amount = $3, cost_source = $4,
                          price = COALESCE(price, $5),
                          metadata = metadata || jsonb_build_object('costs_reconciled_at', now())
                   WHERE id = $1''',
                trade_id, fee, tax, source, executed_price,
            )

    # Risk events and notifications

    async def log_risk_event(self, event: RiskEvent) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO risk_events (event_type, violation_type, symbol, violation_details, severity)
                   VALUES ($1, $2, $3, $4::jsonb, $5)''',
                event.event_type, event.violation_type, event.symbol, _dumps(event.details), event.severity,
            )

    async def insert_notification(self, event) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''INSERT INTO notification_events
                           (source_service, event_type, level, market, title, message, payload, dedupe_key)
                       VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)''',
                    event.source_service, event.event_type, event.level.value, event.market,
                    event.title, event.message, _dumps(event.payload), event.dedupe_key,
                )
        except asyncpg.UniqueViolationError:
            return False
        return True

    async def get_upcoming_events(self, symbol: str, start: datetime, end: datetime) -> List[UpcomingEvent]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT symbol, event_type, title, impact, scheduled_at FROM earnings_events
                   WHERE symbol = $1 AND scheduled_at BETWEEN $2 AND $3
                   ORDER BY scheduled_at''',
                symbol, start, end,
            )
        return [
            UpcomingEvent(
                symbol=row['symbol'],
                event_type=row['event_type'],
                scheduled_at=row['scheduled_at'],
                impact=int(row['impact']),
                title=row['title'] or '',
            )
            for row in rows
        ]

    # System guard

    @staticmethod
    def _row_to_guard(row) -> GuardState:
        return GuardState(
            trading_enabled=row['trading_enabled'],
            reason=row['reason'],
            cooldown_until=row['cooldown_until'],
            error_count=row['error_count'],
            updated_at=row['updated_at'],
        )

    async def get_system_guard(self) -> GuardState:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT trading_enabled, reason, cooldown_until, error_count, updated_at FROM system_guard WHERE id = 1'
            )
        if row is None:
            raise DataIntegrityError("system_guard row is missing")
        return self._row_to_guard(row)

    async def set_trading_enabled(self, enabled: bool, reason: Optional[str]) -> GuardState:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''UPDATE system_guard
                   SET trading_enabled = $1, reason = $2, version = version + 1, updated_at = now()
                   WHERE id = 1
                   RETURNING trading_enabled, reason, cooldown_until, error_count, updated_at''',
                enabled, reason,
            )
        return self._row_to_guard(row)

    async def extend_cooldown(self, until: datetime) -> datetime:
        """Push cooldown_until forward to ``until``; an existing later value wins."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                '''UPDATE system_guard
                   SET cooldown_until = GREATEST(COALESCE(cooldown_until, $1), $1),
                       version = version + 1, updated_at = now()
                   WHERE id = 1
                   RETURNING cooldown_until''',
                until,
            )

    async def record_guard_failure(self, threshold: int, cooldown_until: datetime, reason: str) -> GuardState:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''UPDATE system_guard SET
                       error_count = error_count + 1,
                       trading_enabled = CASE WHEN error_count + 1 >= $1 THEN FALSE ELSE trading_enabled END,
                       reason = CASE WHEN error_count + 1 >= $1 THEN $3 ELSE reason END,
                       cooldown_until = CASE WHEN error_count + 1 >= $1
                           THEN GREATEST(COALESCE(cooldown_until, $2), $2) ELSE cooldown_until END,
                       version = version + 1,
                       updated_at = now()
                   WHERE id = 1
                   RETURNING trading_enabled, reason, cooldown_until, error_count, updated_at''',
                threshold, cooldown_until, reason,
            )
        return self._row_to_guard(row)

    async def reset_guard_errors(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                'UPDATE system_guard SET error_count = 0, updated_at = now() WHERE id = 1 AND error_count <> 0'
            )

    async def update_equity_peak(self, broker: Broker, equity: Decimal) -> Decimal:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                '''INSERT INTO equity_peaks (broker, peak_equity) VALUES ($1, $2)
                   ON CONFLICT (broker) DO UPDATE SET
                       peak_equity = GREATEST(equity_peaks.peak_equity, EXCLUDED.peak_equity),
                       updated_at = now()
                   RETURNING peak_equity''',
                broker.value, equity,
            )

    # ACE compliance logs

    async def insert_ace_log(self, record: AceRecord) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                '''INSERT INTO ace_logs (broker, market, symbol, signal_id, aspiration, capability, execution)
                   VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb)
                   RETURNING id''',
                record.broker.value, record.market.value, record.symbol, record.signal_id,
                _dumps(record.aspiration), _dumps(record.capability), _dumps(record.execution),
            )

    async def update_ace_execution(self, log_id: int, execution: Dict[str, Any]) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                '''UPDATE ace_logs SET execution = $2::jsonb, updated_at = now()
                   WHERE id = $1 AND execution->>'status' = 'PENDING' ''',
                log_id, _dumps(execution),
            )
        return status.endswith(' 1')

    async def update_ace_outcome(self, log_id: int, outcome: Dict[str, Any]) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                'UPDATE ace_logs SET outcome = $2::jsonb, updated_at = now() WHERE id = $1 AND outcome IS NULL',
                log_id, _dumps(outcome),
            )
        return status.endswith(' 1')

    async def fetch_open_ace_logs(self, limit: int = 100) -> List[AceRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT * FROM ace_logs
                   WHERE outcome IS NULL AND execution->>'status' = 'SUCCESS'
                   ORDER BY created_at ASC LIMIT $1''',
                limit,
            )
        return [
            AceRecord(
                id=row['id'],
                broker=parse_broker(row['broker']),
                market=parse_market(row['market']),
                symbol=row['symbol'],
                signal_id=row['signal_id'],
                aspiration=_loads(row['aspiration']),
                capability=_loads(row['capability']),
                execution=_loads(row['execution']),
                outcome=_loads(row['outcome']),
                created_at=row['created_at'],
            )
            for row in rows
        ]

    # Worker heartbeat

    async def upsert_worker_status(self, service: str, state: str, details: Optional[Dict[str, Any]] = None) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO worker_status (service, state, details, last_seen_at)
                   VALUES ($1, $2, $3::jsonb, now())
                   ON CONFLICT (service) DO UPDATE SET
                       state = EXCLUDED.state,
                       details = EXCLUDED.details,
                       last_seen_at = now()''',
                service, state, _dumps(details),
            )
