#!/usr/bin/env python
"""
Tests for forced liquidation of a broker's open positions
"""
import sys
sys.path.insert(0, '.')

import asyncio
from datetime import timedelta
from decimal import Decimal

from brokers.registry import BrokerRegistry
from core.errors import BrokerAPIError, DataIntegrityError, TransientBrokerError
from core.retry import RetryPolicy
from core.types import Broker, Market, OrderStatus, TradeStatus
from monitoring.notifications import NotificationLevel, Notifier
from risk.liquidator import LiquidationOptions, Liquidator
from fakes import NOW, FakeBrokerClient, FakeStore, recorded_sleep


def seeded_store():
    store = FakeStore()
    store.set_position(Broker.UPBIT, Market.CRYPTO, 'KRW-BTC', '0.5', '90000000', price='88000000')
    store.set_position(Broker.UPBIT, Market.CRYPTO, 'KRW-ETH', '3', '4000000', price='3900000')
    store.set_position(Broker.UPBIT, Market.CRYPTO, 'KRW', '1000000', '1', price='1')
    return store


def build(store, responses=None):
    client = FakeBrokerClient(
        Broker.UPBIT, prices={'KRW-BTC': '88000000', 'KRW-ETH': '3900000'}, responses=responses
    )
    sleep, delays = recorded_sleep()
    liquidator = Liquidator(
        store,
        BrokerRegistry({Broker.UPBIT: client}),
        Notifier(store),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=8.0),
        quote_currency='KRW',
        sleep=sleep,
        rng=lambda: 0.5,
        clock=store.clock,
    )
    return liquidator, client, delays


def test_dry_run_records_without_calling_broker():
    store = seeded_store()
    liquidator, client, delays = build(store)

    summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=True)))

    assert client.orders == []
    assert summary.total == 2
    assert summary.success == 2
    assert sorted(r.symbol for r in summary.results) == ['KRW-BTC', 'KRW-ETH']
    assert all(r.attempts == 0 for r in summary.results)
    assert [t.status for t in store.trades] == [TradeStatus.SIMULATED, TradeStatus.SIMULATED]
    assert len(store.positions) == 3
    assert len(store.notifications_of('LIQUIDATION')) == 1
    assert delays == []


def test_every_open_position_is_attempted_once():
    store = seeded_store()
    liquidator, client, _ = build(store)

    summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    assert sorted(o.symbol for o in client.orders) == ['KRW-BTC', 'KRW-ETH']
    assert summary.failed == 0
    assert [t.status for t in store.trades] == [TradeStatus.FILLED, TradeStatus.FILLED]
    assert list(store.positions) == [(Broker.UPBIT, Market.CRYPTO, 'KRW')]
    assert store.trades[0].metadata['source'] == 'circuit_breaker_liquidation'


def test_transient_failures_retry_with_backoff():
    store = seeded_store()
    store.positions.pop((Broker.UPBIT, Market.CRYPTO, 'KRW-ETH'))
    timeout = TransientBrokerError('UPBIT', 'timeout')
    liquidator, client, delays = build(store, responses=[timeout, timeout, OrderStatus.SUCCESS])

    summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    result = summary.results[0]
    assert result.success
    assert result.attempts == 3
    assert delays == [1.0, 2.0]
    assert len(client.orders) == 3


def test_exhausted_retries_fail_but_other_positions_continue():
    store = seeded_store()
    liquidator, client, delays = build(
        store, responses=[OrderStatus.FAILED, OrderStatus.FAILED, OrderStatus.FAILED]
    )

    summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    assert summary.failed_symbols == ['KRW-BTC']
    assert summary.success == 1
    assert len(client.orders) == 4
    assert [t.status for t in store.trades] == [TradeStatus.FAILED, TradeStatus.FILLED]
    notes = store.notifications_of('LIQUIDATION')
    assert len(notes) == 1
    assert notes[0].level is NotificationLevel.ERROR


def test_partial_liquidation_and_minimum_quantity():
    store = FakeStore()
    store.set_position(Broker.UPBIT, Market.CRYPTO, 'KRW-BTC', '0.5', '90000000', price='88000000')
    store.set_position(Broker.UPBIT, Market.CRYPTO, 'KRW-DOGE', '0.00001', '200', price='190')
    liquidator, client, _ = build(store)

    summary = asyncio.run(liquidator.liquidate_all(
        Broker.UPBIT, LiquidationOptions(dry_run=False, liquidate_pct=Decimal('0.5'), min_qty=Decimal('0.0001'))
    ))

    assert summary.skipped == 1
    assert client.orders[0].quantity == Decimal('0.25')
    assert store.positions[(Broker.UPBIT, Market.CRYPTO, 'KRW-BTC')].qty == Decimal('0.25')


def single_position_store():
    store = seeded_store()
    store.positions.pop((Broker.UPBIT, Market.CRYPTO, 'KRW-ETH'))
    return store


def test_retries_reuse_one_idempotency_key():
    store = single_position_store()
    timeout = TransientBrokerError('UPBIT', 'timeout')
    liquidator, client, _ = build(store, responses=[timeout, OrderStatus.SUCCESS])

    summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    keys = {o.idempotency_key for o in client.orders}
    assert len(client.orders) == 2
    assert keys == {summary.results[0].idempotency_key}
    assert keys.pop().startswith('liq:UPBIT:KRW-BTC:')
    assert store.trades[0].idempotency_key == summary.results[0].idempotency_key


def test_each_run_gets_a_fresh_key():
    store = single_position_store()
    liquidator, client, _ = build(store, responses=[OrderStatus.FAILED] * 3)
    asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    store.clock.now = NOW + timedelta(minutes=1)
    asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    assert len({o.idempotency_key for o in client.orders}) == 2
    assert len(store.trades) == 2


def test_skipped_order_is_not_retried():
    store = single_position_store()
    liquidator, client, delays = build(store, responses=[OrderStatus.SKIPPED])

    summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

    assert len(client.orders) == 1
    assert summary.results[0].attempts == 1
    assert summary.failed_symbols == ['KRW-BTC']
    assert delays == []


def test_non_transient_errors_are_not_retried():
    for error in (
        BrokerAPIError('UPBIT', 400, 'insufficient_funds', 'not enough volume', '{}'),
        DataIntegrityError('order response without uuid'),
    ):
        store = single_position_store()
        liquidator, client, delays = build(store, responses=[error])

        summary = asyncio.run(liquidator.liquidate_all(Broker.UPBIT, LiquidationOptions(dry_run=False)))

        assert len(client.orders) == 1
        assert summary.failed == 1
        assert type(error).__name__ in summary.results[0].error
        assert delays == []
