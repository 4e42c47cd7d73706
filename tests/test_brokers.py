#!/usr/bin/env python
"""
Tests for the Upbit and KIS broker clients against a scripted REST layer
"""
import sys
sys.path.insert(0, '.')

import asyncio
from decimal import Decimal

import pytest

from brokers.base import DRY_RUN_MESSAGE, OrderRequest
from brokers.kis import ORDER_PATH, PRICE_PATH, TOKEN_PATH, KISClient
from brokers.upbit import UpbitClient, to_market_code
from core.errors import BrokerAPIError, DataIntegrityError
from core.types import Market, OrderSide, OrderStatus, OrderType


class ScriptedRest:
    """Answers each path from a queue of payloads or exceptions."""

    def __init__(self, responses=None):
        self.responses = {path: list(items) for path, items in (responses or {}).items()}
        self.calls = []

    async def _answer(self, method, path, body, headers):
        self.calls.append((method, path, body, headers))
        answer = self.responses[path].pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def get(self, path, params=None, headers=None):
        return await self._answer('GET', path, params, headers)

    async def post(self, path, json_body=None, headers=None):
        return await self._answer('POST', path, json_body, headers)

    async def close(self):
        pass


def signer(params):
    return {'Authorization': f"Bearer signed-{len(params)}"}


def request(market=Market.CRYPTO, symbol='KRW-BTC', side=OrderSide.BUY, qty='0.5', price='93000', dry_run=False):
    return OrderRequest(
        market=market, symbol=symbol, side=side, order_type=OrderType.MARKET, quantity=Decimal(qty),
        price=Decimal(price) if price else None, dry_run=dry_run, idempotency_key='UPBIT:CRYPTO:KRW-BTC:BUY:sig-1',
    )


@pytest.mark.parametrize('symbol,code', [('btc', 'KRW-BTC'), ('ETH/KRW', 'KRW-ETH'), ('KRW-XRP', 'KRW-XRP')])
def test_market_codes(symbol, code):
    assert to_market_code(symbol) == code


def test_upbit_dry_run_and_foreign_market_never_call_api():
    rest = ScriptedRest()
    client = UpbitClient(rest=rest, signer=signer)

    dry = asyncio.run(client.place_order(request(dry_run=True)))
    assert dry.status is OrderStatus.SKIPPED
    assert dry.message == DRY_RUN_MESSAGE

    foreign = asyncio.run(client.place_order(request(market=Market.KRX, symbol='005930')))
    assert foreign.status is OrderStatus.SKIPPED
    assert rest.calls == []


def test_upbit_live_order_without_signer_fails():
    result = asyncio.run(UpbitClient(rest=ScriptedRest()).place_order(request()))
    assert result.status is OrderStatus.FAILED


def test_upbit_market_buy_spends_krw_amount():
    rest = ScriptedRest({'/orders': [{'uuid': 'u-1', 'state': 'wait'}]})
    result = asyncio.run(UpbitClient(rest=rest, signer=signer).place_order(request()))

    assert result.status is OrderStatus.SUCCESS
    assert result.order_id == 'u-1'
    _, _, params, headers = rest.calls[0]
    assert params['ord_type'] == 'price'
    assert params['price'] == '46500'
    assert params['identifier'] == 'UPBIT:CRYPTO:KRW-BTC:BUY:sig-1'
    assert headers['Authorization'].startswith('Bearer')


def test_upbit_market_sell_sends_volume():
    rest = ScriptedRest({'/orders': [{'uuid': 'u-2', 'state': 'done', 'executed_volume': '0.5'}]})
    result = asyncio.run(UpbitClient(rest=rest, signer=signer).place_order(request(side=OrderSide.SELL, price=None)))

    params = rest.calls[0][2]
    assert params['ord_type'] == 'market'
    assert Decimal(params['volume']) == Decimal('0.5')
    assert result.executed_qty == Decimal('0.5')


def test_upbit_rejection_is_failed_and_server_error_propagates():
    rejected = ScriptedRest({'/orders': [BrokerAPIError('UPBIT', 400, 'insufficient_funds_bid', 'no funds', '{}')]})
    result = asyncio.run(UpbitClient(rest=rejected, signer=signer).place_order(request()))
    assert result.status is OrderStatus.FAILED

    broken = ScriptedRest({'/orders': [BrokerAPIError('UPBIT', 503, None, None, '')]})
    with pytest.raises(BrokerAPIError):
        asyncio.run(UpbitClient(rest=broken, signer=signer).place_order(request()))


def test_upbit_order_costs_from_trades():
    rest = ScriptedRest({'/order': [{
        'uuid': 'u-1',
        'state': 'done',
        'paid_fee': '23.25',
        'trades': [{'volume': '0.2', 'funds': '18600'}, {'volume': '0.3', 'funds': '27900'}],
    }]})
    costs = asyncio.run(UpbitClient(rest=rest, signer=signer).fetch_order_costs('u-1'))
    assert costs.final
    assert costs.fee == Decimal('23.25')
    assert costs.executed_price == Decimal('93000')


def test_upbit_ticker_validation():
    rest = ScriptedRest({'/ticker': [[{'trade_price': 93000}], [], {'error': 'bad'}]})
    client = UpbitClient(rest=rest)
    assert asyncio.run(client.get_current_price(Market.CRYPTO, 'BTC')) == Decimal('93000')
    assert asyncio.run(client.get_current_price(Market.CRYPTO, 'BTC')) is None
    with pytest.raises(DataIntegrityError):
        asyncio.run(client.get_current_price(Market.CRYPTO, 'BTC'))


def kis_client(rest, env='PAPER'):
    return KISClient(app_key='key', app_secret='secret', account_no='50000000', env=env, rest=rest)


def test_kis_only_trades_krx():
    rest = ScriptedRest()
    client = kis_client(rest)
    us = asyncio.run(client.place_order(request(market=Market.US, symbol='AAPL')))
    assert us.status is OrderStatus.SKIPPED
    dry = asyncio.run(client.place_order(request(market=Market.KRX, symbol='005930', qty='12', dry_run=True)))
    assert dry.status is OrderStatus.SKIPPED
    assert rest.calls == []


def test_kis_order_reuses_token_and_maps_rejection():
    rest = ScriptedRest({
        TOKEN_PATH: [{'access_token': 'tok', 'expires_in': 86400}],
        ORDER_PATH: [
            {'rt_cd': '0', 'msg1': 'ok', 'output': {'ODNO': '0001'}},
            {'rt_cd': '1', 'msg_cd': 'APBK0915', 'msg1': 'insufficient balance'},
        ],
    })
    client = kis_client(rest)
    order = request(market=Market.KRX, symbol='005930', qty='12', price='70000')

    filled = asyncio.run(client.place_order(order))
    rejected = asyncio.run(client.place_order(order))

    assert filled.status is OrderStatus.SUCCESS
    assert filled.order_id == '0001'
    assert rejected.status is OrderStatus.FAILED
    assert 'APBK0915' in rejected.message
    assert [c[1] for c in rest.calls].count(TOKEN_PATH) == 1
    body, headers = rest.calls[1][2], rest.calls[1][3]
    assert body['ORD_QTY'] == '12'
    assert body['ORD_DVSN'] == '01'
    assert headers['tr_id'] == 'VTTC0802U'


def test_kis_price_lookup():
    rest = ScriptedRest({
        TOKEN_PATH: [{'access_token': 'tok'}],
        PRICE_PATH: [{'rt_cd': '0', 'output': {'stck_prpr': '70100'}}, {'rt_cd': '1', 'msg_cd': 'X', 'msg1': 'closed'}],
    })
    client = kis_client(rest, env='REAL')
    assert asyncio.run(client.get_current_price(Market.KRX, '005930')) == Decimal('70100')
    assert asyncio.run(client.get_current_price(Market.KRX, '005930')) is None
    assert asyncio.run(client.get_current_price(Market.US, 'AAPL')) is None
