#!/usr/bin/env python
"""
Tests for notifications, retry backoff and the periodic job runner
"""
import sys
sys.path.insert(0, '.')

import asyncio
import logging

import pytest

from core.retry import RetryPolicy
from monitoring.alerts import AlertWebhook
from monitoring.async_utils import run_periodic, run_tasks_with_cleanup
from monitoring.logging_utils import resolve_level
from monitoring.notifications import NotificationEvent, NotificationLevel, Notifier, minute_key
from fakes import NOW, FakeStore


class RecordingWebhook:
    def __init__(self):
        self.alerts = []

    async def send_alert(self, alert_type, message, severity='warning', metadata=None):
        self.alerts.append((alert_type, severity, metadata))
        return True


def event(level, dedupe='k-1'):
    return NotificationEvent('CIRCUIT_BREAKER', level, 'Circuit breaker', 'halted', payload={'loss': 1}, dedupe_key=dedupe)


def test_notifier_dedupes_and_escalates_warnings():
    store = FakeStore()
    webhook = RecordingWebhook()
    notifier = Notifier(store, webhook)

    assert asyncio.run(notifier.send(event(NotificationLevel.ERROR))) is True
    assert asyncio.run(notifier.send(event(NotificationLevel.ERROR))) is False
    assert asyncio.run(notifier.send(event(NotificationLevel.INFO, dedupe='k-2'))) is True

    assert len(store.notifications) == 2
    assert webhook.alerts == [('CIRCUIT_BREAKER', 'critical', {'loss': 1})]


def test_minute_key_format():
    assert minute_key(NOW) == '202403050200'


def test_placeholder_webhook_is_disabled():
    assert AlertWebhook('https://hooks.example/your-webhook-url').enabled is False
    assert AlertWebhook('').enabled is False
    assert asyncio.run(AlertWebhook('').send_alert('X', 'msg')) is False


def test_backoff_schedule_and_cap():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=4.0)
    assert [policy.delay_for(n, lambda: 0.5) for n in range(4)] == [1.0, 2.0, 4.0, 4.0]
    assert policy.delay_for(0, lambda: 0.0) == pytest.approx(0.7)
    assert policy.delay_for(0, lambda: 1.0) == pytest.approx(1.3)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_resolve_level():
    assert resolve_level('debug') == logging.DEBUG
    assert resolve_level(None) == logging.INFO
    assert resolve_level('chatty', logging.WARNING) == logging.WARNING


def test_periodic_job_survives_failures_until_stopped():
    calls = []

    async def scenario():
        stop = asyncio.Event()

        async def job():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError('first run fails')
            if len(calls) == 3:
                stop.set()

        await asyncio.wait_for(run_periodic('job', 0.01, job, stop), timeout=2)

    asyncio.run(scenario())
    assert calls == [0, 1, 2]


def test_cleanup_runs_after_tasks():
    cleaned = []

    async def scenario():
        async def cleanup():
            cleaned.append(True)

        task = asyncio.ensure_future(asyncio.sleep(0))
        await run_tasks_with_cleanup([task], cleanup=cleanup)

    asyncio.run(scenario())
    assert cleaned == [True]
