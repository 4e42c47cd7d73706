#!/usr/bin/env python
"""
Tests for broker fee and tax back-filling
"""
import sys
sys.path.insert(0, '.')

import asyncio
from decimal import Decimal

from brokers.base import OrderCosts
from brokers.registry import BrokerRegistry
from core.errors import BrokerAPIError, TransientBrokerError
from core.retry import RetryPolicy
from core.types import Broker, Market, OrderSide, Trade, TradeStatus
from orchestration.cost_reconciler import COST_UNAVAILABLE, CostReconciler
from fakes import FakeBrokerClient, FakeStore, recorded_sleep


class CostClient(FakeBrokerClient):
    """Broker client with an order-detail lookup answered from a queue."""

    def __init__(self, broker, answers):
        super().__init__(broker)
        self.answers = list(answers)
        self.lookups = []

    async def fetch_order_costs(self, order_id):
        self.lookups.append(order_id)
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def add_trade(store, broker, market, symbol, order_id, price=None):
    return asyncio.run(store.insert_trade(Trade(
        broker=broker, market=market, symbol=symbol, side=OrderSide.BUY, qty=Decimal('1'),
        price=price, status=TradeStatus.FILLED, order_id=order_id,
    )))


def build(store, clients):
    sleep, delays = recorded_sleep()
    reconciler = CostReconciler(
        store, BrokerRegistry(clients), lookback_days=3, batch_size=10, poll_max=3, poll_interval_s=0.3,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleep, rng=lambda: 0.5,
        clock=store.clock,
    )
    return reconciler, delays


def test_waits_for_final_order_state():
    store = FakeStore()
    trade_id = add_trade(store, Broker.UPBIT, Market.CRYPTO, 'KRW-BTC', 'uuid-1')
    client = CostClient(Broker.UPBIT, [
        OrderCosts('uuid-1', fee=Decimal('10'), state='wait'),
        OrderCosts('uuid-1', fee=Decimal('46.5'), state='done', executed_price=Decimal('93000')),
    ])
    reconciler, delays = build(store, {Broker.UPBIT: client})

    assert asyncio.run(reconciler.run_once()) == 1
    assert store.trade_costs[trade_id] == {'fee': Decimal('46.5'), 'tax': Decimal('0'), 'source': 'upbit_api'}
    assert store.trades[0].price == Decimal('93000')
    assert delays == [0.3]


def test_never_final_is_left_for_next_run():
    store = FakeStore()
    add_trade(store, Broker.UPBIT, Market.CRYPTO, 'KRW-BTC', 'uuid-1')
    client = CostClient(Broker.UPBIT, [OrderCosts('uuid-1', fee=None, state='wait')] * 3)
    reconciler, delays = build(store, {Broker.UPBIT: client})

    assert asyncio.run(reconciler.run_once()) == 0
    assert store.trade_costs == {}
    assert len(client.lookups) == 3
    assert delays == [0.3, 0.3]


def test_transient_lookup_errors_are_retried():
    store = FakeStore()
    trade_id = add_trade(store, Broker.UPBIT, Market.CRYPTO, 'KRW-BTC', 'uuid-1', price=Decimal('93000'))
    client = CostClient(Broker.UPBIT, [
        TransientBrokerError('UPBIT', 'timeout'),
        OrderCosts('uuid-1', fee=Decimal('46.5'), state='done', executed_price=Decimal('92000')),
    ])
    reconciler, delays = build(store, {Broker.UPBIT: client})

    assert asyncio.run(reconciler.run_once()) == 1
    assert delays == [1.0]
    assert store.trade_costs[trade_id]['fee'] == Decimal('46.5')
    # A recorded fill price is not overwritten
    assert store.trades[0].price == Decimal('93000')


def test_permanent_error_does_not_stop_the_batch():
    store = FakeStore()
    add_trade(store, Broker.UPBIT, Market.CRYPTO, 'KRW-BTC', 'uuid-1')
    second = add_trade(store, Broker.UPBIT, Market.CRYPTO, 'KRW-ETH', 'uuid-2')
    client = CostClient(Broker.UPBIT, [
        BrokerAPIError('UPBIT', 404, 'order_not_found', 'missing', '{}'),
        OrderCosts('uuid-2', fee=Decimal('5'), state='done'),
    ])
    reconciler, delays = build(store, {Broker.UPBIT: client})

    assert asyncio.run(reconciler.run_once()) == 1
    assert list(store.trade_costs) == [second]
    assert delays == []


def test_broker_without_lookup_is_marked_unavailable():
    store = FakeStore()
    trade_id = add_trade(store, Broker.KIS, Market.KRX, '005930', 'kis-1', price=Decimal('70000'))
    reconciler, _ = build(store, {Broker.KIS: FakeBrokerClient(Broker.KIS)})

    assert asyncio.run(reconciler.run_once()) == 1
    assert store.trade_costs[trade_id] == {'fee': None, 'tax': None, 'source': COST_UNAVAILABLE}
    assert asyncio.run(reconciler.run_once()) == 0


def test_unregistered_broker_is_skipped():
    store = FakeStore()
    add_trade(store, Broker.KIS, Market.KRX, '005930', 'kis-1')
    reconciler, _ = build(store, {})
    assert asyncio.run(reconciler.run_once()) == 0
    assert store.trade_costs == {}
