import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.section('monitoring').get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.signals_processed = Counter(
            'executor_signals_processed_total', 'Signals consumed by the executor', ['market', 'outcome']
        )
        self.risk_rejections = Counter(
            'executor_risk_rejections_total', 'Signals rejected by risk validation', ['market']
        )
        self.orders = Counter('executor_orders_total', 'Order attempts by result', ['broker', 'status'])
        self.order_latency = Histogram('executor_order_latency_seconds', 'Broker order round-trip latency', ['broker'])
        self.guard_blocks = Counter('executor_guard_blocks_total', 'Market ticks blocked by guards', ['market'])
        self.tick_duration = Histogram('executor_market_tick_seconds', 'Duration of a market loop tick', ['market'])
        self.ticks_skipped = Counter(
            'executor_market_ticks_skipped_total', 'Market ticks skipped', ['market', 'reason']
        )
        self.loop_running = Gauge('executor_market_loop_running', 'Market loop in flight flag', ['market'])

        self.breaker_trips = Counter('circuit_breaker_trips_total', 'Circuit breaker trips', ['broker', 'reason'])
        self.breaker_action_failures = Counter(
            'circuit_breaker_action_failures_total', 'Failed circuit breaker transition actions', ['action']
        )
        self.daily_pnl_pct = Gauge('circuit_breaker_daily_pnl_pct', 'Daily P&L as a fraction of account', ['broker'])
        self.drawdown_pct = Gauge('circuit_breaker_drawdown_pct', 'Drawdown from equity peak', ['broker'])
        self.trading_enabled = Gauge('system_guard_trading_enabled', 'Shared trading enabled flag')

        self.liquidations = Counter('liquidation_positions_total', 'Liquidated positions by result', ['broker', 'result'])
        self.ace_records = Counter('ace_records_total', 'Compliance log writes', ['stage'])
        self.costs_reconciled = Counter('cost_reconciled_trades_total', 'Trades with reconciled costs', ['source'])

    def record_signal(self, market: str, outcome: str):
        self.signals_processed.labels(market=market, outcome=outcome).inc()

    def record_rejection(self, market: str):
        self.risk_rejections.labels(market=market).inc()

    def record_order(self, broker: str, status: str, latency_seconds: Optional[float] = None):
        self.orders.labels(broker=broker, status=status).inc()
        if latency_seconds is not None:
            self.order_latency.labels(broker=broker).observe(latency_seconds)

    def record_guard_block(self, market: str):
        self.guard_blocks.labels(market=market).inc()

    def record_tick(self, market: str, seconds: float):
        self.tick_duration.labels(market=market).observe(seconds)

    def record_tick_skipped(self, market: str, reason: str):
        self.ticks_skipped.labels(market=market, reason=reason).inc()

    def set_loop_running(self, market: str, running: bool):
        self.loop_running.labels(market=market).set(1 if running else 0)

    def record_breaker_trip(self, broker: str, reason: str):
        self.breaker_trips.labels(broker=broker, reason=reason).inc()

    def record_breaker_action_failure(self, action: str):
        self.breaker_action_failures.labels(action=action).inc()

    def update_pnl(self, broker: str, pnl_pct: float, drawdown_pct: Optional[float] = None):
        self.daily_pnl_pct.labels(broker=broker).set(pnl_pct)
        if drawdown_pct is not None:
            self.drawdown_pct.labels(broker=broker).set(drawdown_pct)

    def update_trading_enabled(self, enabled: bool):
        self.trading_enabled.set(1 if enabled else 0)

    def record_liquidation(self, broker: str, result: str):
        self.liquidations.labels(broker=broker, result=result).inc()

    def record_ace(self, stage: str):
        self.ace_records.labels(stage=stage).inc()

    def record_cost_reconciled(self, source: str):
        self.costs_reconciled.labels(source=source).inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
