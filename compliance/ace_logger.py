import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from config import config
from config.utils import get_config_section
from monitoring.metrics import metrics
from storage.records import AceRecord


logger = logging.getLogger(__name__)


class AuditTrail:
    """Append-only JSONL mirror of every compliance write."""

    def __init__(self, log_path: Optional[str]):
        self.log_path = Path(log_path) if log_path else None

    def write(self, stage: str, log_id: Optional[int], payload: Dict[str, Any]) -> None:
        if self.log_path is None:
            return
        entry = {'timestamp': time.time(), 'stage': stage, 'ace_log_id': log_id, **payload}
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(entry, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist ACE audit entry: %s", exc)


class AceLogger:
    """Writes ACE records: created once, execution attached once, outcome attached once."""

    def __init__(self, store, audit_path: Optional[str] = None):
        cfg = get_config_section(config, 'compliance')
        self.store = store
        self.audit = AuditTrail(audit_path if audit_path is not None else cfg.get('audit_log'))

    async def log_entry(self, record: AceRecord) -> int:
        log_id = await self.store.insert_ace_log(record)
        record.id = log_id
        self.audit.write('entry', log_id, record.as_dict())
        metrics.record_ace('entry')
        logger.info("ACE record %s opened for %s %s", log_id, record.broker.value, record.symbol)
        return log_id

    async def record_execution(self, log_id: int, execution: Dict[str, Any]) -> bool:
        updated = await self.store.update_ace_execution(log_id, execution)
        if not updated:
            logger.warning("ACE record %s already has an execution; ignoring update", log_id)
            return False
        self.audit.write('execution', log_id, {'execution': execution})
        metrics.record_ace('execution')
        return True

    async def record_outcome(self, log_id: int, outcome: Dict[str, Any]) -> bool:
        updated = await self.store.update_ace_outcome(log_id, outcome)
        if not updated:
            logger.warning("ACE record %s already has an outcome; ignoring update", log_id)
            return False
        self.audit.write('outcome', log_id, {'outcome': outcome})
        metrics.record_ace('outcome')
        logger.info("ACE record %s closed: %s", log_id, outcome.get('result'))
        return True
