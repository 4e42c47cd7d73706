#!/usr/bin/env python
"""
Tests for the shared system guard, daily trade limit and auto recovery
"""
import sys
sys.path.insert(0, '.')

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from core.types import Broker, Market, OrderSide, Trade, TradeStatus
from risk.guards import SystemGuards, trading_day_start
from fakes import NOW, FakeStore

GUARD_CONFIG = {'auto_disable_consecutive_failures': 3, 'auto_recovery_cooldown_min': 10, 'auto_recover': True}


def make_guards(store, **overrides):
    params = dict(max_daily_trades=2, clock=store.clock, guard_config=GUARD_CONFIG)
    params.update(overrides)
    return SystemGuards(store, **params)


def add_filled(store, executed_at=None):
    asyncio.run(store.insert_trade(Trade(
        broker=Broker.UPBIT, market=Market.CRYPTO, symbol='KRW-BTC', side=OrderSide.BUY,
        qty=Decimal('0.1'), price=Decimal('90000000'), status=TradeStatus.FILLED, executed_at=executed_at,
    )))


def test_trading_day_starts_at_seoul_midnight():
    start = trading_day_start(datetime(2024, 3, 5, 16, 30, tzinfo=timezone.utc))
    assert start == datetime(2024, 3, 5, 15, 0, tzinfo=timezone.utc)


def test_open_guard_allows_trading():
    store = FakeStore()
    check = asyncio.run(make_guards(store).check_all(Broker.UPBIT))
    assert check.allowed
    assert check.trades_today == 0


def test_disabled_guard_blocks_with_reason():
    store = FakeStore()
    store.guard = replace(store.guard, trading_enabled=False, reason='manual stop by operator')
    check = asyncio.run(make_guards(store).check_all(Broker.UPBIT))
    assert not check.allowed
    assert 'manual stop by operator' in check.reasons[0]
    assert not check.recovered


def test_unreadable_guard_fails_closed():
    store = FakeStore()
    store.failures['get_system_guard'] = ConnectionError('pool exhausted')
    guards = make_guards(store)
    assert not asyncio.run(guards.check_all(Broker.UPBIT)).allowed
    check = asyncio.run(guards.check_system_guard())
    assert not check.allowed
    assert check.reasons[0].startswith('system guard unavailable')
    assert asyncio.run(guards.is_in_cooldown()) is True


def test_daily_trade_limit():
    store = FakeStore()
    add_filled(store)
    add_filled(store, executed_at=NOW - timedelta(days=1))
    guards = make_guards(store)
    assert asyncio.run(guards.check_daily_trade_limit(Broker.UPBIT)).allowed

    add_filled(store)
    check = asyncio.run(guards.check_daily_trade_limit(Broker.UPBIT))
    assert not check.allowed
    assert check.reasons == ['daily trade limit reached (2/2)']


def test_consecutive_failures_disable_trading():
    store = FakeStore()
    guards = make_guards(store)
    for _ in range(2):
        asyncio.run(guards.record_failure('order rejected'))
    assert store.guard.trading_enabled

    state = asyncio.run(guards.record_failure('order rejected'))
    assert not state.trading_enabled
    assert state.cooldown_until == NOW + timedelta(minutes=10)


def test_success_resets_failure_count():
    store = FakeStore()
    guards = make_guards(store)
    asyncio.run(guards.record_failure('timeout'))
    asyncio.run(guards.record_failure('timeout'))
    asyncio.run(guards.record_success())
    asyncio.run(guards.record_failure('timeout'))
    assert store.guard.trading_enabled
    assert store.guard.error_count == 1


def test_auto_recover_after_cooldown_only():
    store = FakeStore()
    store.guard = replace(store.guard, trading_enabled=False, reason='auto disabled after consecutive failures: x',
                          cooldown_until=NOW + timedelta(minutes=5), error_count=3)
    guards = make_guards(store)
    assert asyncio.run(guards.try_auto_recover()) is False

    store.clock.now = NOW + timedelta(minutes=6)
    check = asyncio.run(guards.check_all(Broker.UPBIT))
    assert check.recovered
    assert check.allowed
    assert store.guard.trading_enabled
    assert store.guard.error_count == 0


def test_manual_disable_is_never_auto_recovered():
    store = FakeStore()
    store.guard = replace(store.guard, trading_enabled=False, reason='Manual halt')
    assert asyncio.run(make_guards(store).try_auto_recover()) is False
    assert asyncio.run(make_guards(store, auto_recover=False).try_auto_recover()) is False


def test_breaker_halt_without_cooldown_is_not_recovered():
    store = FakeStore()
    store.guard = replace(store.guard, trading_enabled=False, reason='circuit breaker: daily loss -5.20%')
    guards = make_guards(store)
    assert asyncio.run(guards.try_auto_recover()) is False
    assert not asyncio.run(guards.check_all(Broker.UPBIT)).allowed
    assert not store.guard.trading_enabled

    store.guard = replace(store.guard, cooldown_until=NOW - timedelta(minutes=1))
    assert asyncio.run(guards.try_auto_recover()) is True
    assert store.guard.trading_enabled
