import asyncio
import logging
from typing import Any, Optional

from brokers.registry import build_registry
from brokers.upbit import RequestSigner
from compliance.ace_logger import AceLogger
from compliance.outcome_tracker import OutcomeTracker
from config import config
from config.settings import TradingSettings, require_live_credentials
from config.utils import get_config_section, parse_bool, parse_list
from core.errors import FatalConfigError
from core.types import parse_broker
from execution.order_executor import OrderExecutor
from execution.pipeline import TradePipeline
from monitoring.alerts import AlertWebhook
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.metrics import metrics, start_metrics_server
from monitoring.notifications import Notifier
from orchestration.cost_reconciler import CostReconciler
from orchestration.scheduler import MarketLoopScheduler
from risk.circuit_breaker import CircuitBreaker
from risk.guards import SystemGuards
from risk.liquidator import Liquidator
from risk.position_sizer import PositionSizer
from risk.risk_validator import RiskValidator
from storage.store import TradingStore


logger = logging.getLogger(__name__)


class TradingService:
    """Wire storage, broker clients, risk gates and market loops into one process."""

    def __init__(self, config_obj: Optional[Any] = None, store: Optional[TradingStore] = None,
                 upbit_signer: Optional[RequestSigner] = None):
        self.config = config_obj or config
        self.settings = TradingSettings.from_config(self.config)
        require_live_credentials(self.settings, self.config)

        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        risk_cfg = get_config_section(self.config, 'risk')
        breaker_cfg = get_config_section(self.config, 'circuit_breaker')
        compliance_cfg = get_config_section(self.config, 'compliance')
        reconcile_cfg = get_config_section(self.config, 'cost_reconciliation')

        self.store = store or TradingStore(get_config_section(self.config, 'database'))
        self.registry = build_registry(self.config, self.settings.brokers, self.settings.dry_run, upbit_signer)
        self.notifier = Notifier(self.store, AlertWebhook(self.monitoring_cfg.get('alert_webhook')))

        self.sizer = PositionSizer(risk_pct=risk_cfg.get('risk_pct'), max_position_pct=risk_cfg.get('max_position_pct'))
        self.validator = RiskValidator(
            sizer=self.sizer,
            stop_loss_pct=self.settings.stop_loss_pct,
            risk_config=risk_cfg,
            event_config=get_config_section(self.config, 'event_risk'),
        )
        self.guards = SystemGuards(
            self.store,
            max_daily_trades=self.settings.max_daily_trades,
            guard_config=get_config_section(self.config, 'guards'),
        )
        self.liquidator = Liquidator(self.store, self.registry, self.notifier)

        self.breakers = []
        if parse_bool(breaker_cfg.get('enabled'), True):
            try:
                configured = [parse_broker(b) for b in parse_list(breaker_cfg.get('brokers')) or []]
            except ValueError as exc:
                raise FatalConfigError(f"Invalid circuit_breaker.brokers value: {exc}") from exc
            configured = configured or self.settings.brokers
            self.breakers = [
                CircuitBreaker(
                    self.store, self.liquidator, self.notifier, broker,
                    dry_run=self.settings.dry_run, breaker_config=breaker_cfg,
                )
                for broker in configured if broker in self.settings.brokers
            ]

        self.executor = OrderExecutor(self.registry, self.store)
        self.ace_logger = AceLogger(self.store, audit_path=compliance_cfg.get('audit_log'))
        self.outcome_tracker = OutcomeTracker(self.store, self.ace_logger)
        self.reconciler = None
        if parse_bool(reconcile_cfg.get('enabled'), True):
            self.reconciler = CostReconciler(self.store, self.registry)

        self.pipeline = TradePipeline(
            self.store, self.registry, self.executor, self.validator, self.guards,
            self.ace_logger, self.notifier, self.settings,
        )
        self.scheduler = MarketLoopScheduler(
            self.store,
            self.pipeline,
            self.guards,
            self.notifier,
            self.settings,
            breakers=self.breakers,
            reconciler=self.reconciler,
            outcome_tracker=self.outcome_tracker,
            breaker_interval_s=float(breaker_cfg.get('check_interval_sec', 60)),
            reconcile_interval_s=float(reconcile_cfg.get('interval_sec', 300)),
            outcome_interval_s=float(compliance_cfg.get('outcome_check_interval_sec', 300)),
            service_name=str(self.monitoring_cfg.get('service_name') or 'trade-executor'),
        )
        self._stopped = False

    async def start(self):
        await self.store.initialize()
        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        if not self.settings.enabled:
            logger.warning("Trade executor disabled by configuration; nothing to do")
            return
        try:
            guard = await self.store.get_system_guard()
            metrics.update_trading_enabled(guard.trading_enabled)
        except Exception as exc:
            logger.error("Could not read system guard at startup: %s", exc)

        logger.info(
            "Trade executor starting (dry_run=%s, loop_mode=%s, markets=%s, run_mode=%s)",
            self.settings.dry_run,
            self.settings.loop_mode,
            ','.join(m.value for m in self.settings.execute_markets),
            self.settings.run_mode,
        )
        if self.settings.loop_mode:
            await run_tasks_with_cleanup(self.scheduler.start(), cleanup=self.stop)
        else:
            results = await self.scheduler.run_all_once()
            for result in results:
                logger.info("%s: %s %s", result.market.value, result.status, '; '.join(result.reasons))

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.scheduler.stop()
        await self.registry.close()
        await self.store.close()


async def main():
    try:
        service = TradingService(config)
    except FatalConfigError as exc:
        logger.critical("Refusing to start: %s", exc)
        raise SystemExit(1) from exc
    try:
        await service.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Trade executor shutting down on interrupt")
    finally:
        await service.stop()

if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level'))
    asyncio.run(main())
