#!/usr/bin/env python
"""
Tests for exchange session checks
"""
import sys
sys.path.insert(0, '.')

from datetime import datetime, timezone

import pytest

from core.types import Market
from orchestration.market_hours import is_market_open


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_crypto_never_closes():
    assert is_market_open(Market.CRYPTO, utc(2024, 3, 9, 3, 0))


@pytest.mark.parametrize('moment,expected', [
    (utc(2024, 3, 5, 0, 0), True),     # 09:00 KST Tue
    (utc(2024, 3, 5, 6, 29), True),    # 15:29 KST
    (utc(2024, 3, 5, 6, 30), False),   # 15:30 KST
    (utc(2024, 3, 4, 23, 59), False),  # 08:59 KST
    (utc(2024, 3, 9, 2, 0), False),    # Saturday
])
def test_krx_regular_session(moment, expected):
    assert is_market_open(Market.KRX, moment) is expected


def test_us_regular_session_follows_new_york_time():
    # 2024-03-05 is before the DST switch: New York is UTC-5
    assert not is_market_open(Market.US, utc(2024, 3, 5, 14, 29))
    assert is_market_open(Market.US, utc(2024, 3, 5, 14, 30))
    # After the switch New York is UTC-4
    assert is_market_open(Market.US, utc(2024, 3, 12, 13, 30))


def test_run_modes():
    premarket = utc(2024, 3, 5, 12, 0)  # 07:00 New York
    assert not is_market_open(Market.US, premarket, 'REGULAR')
    assert is_market_open(Market.US, premarket, 'PREMARKET')
    assert is_market_open(Market.US, premarket, 'EXTENDED')
    assert not is_market_open(Market.US, premarket, 'AFTERMARKET')
    assert is_market_open(Market.KRX, utc(2024, 3, 5, 6, 45), 'AFTERMARKET')


def test_guard_disabled_or_no_check_always_open():
    saturday = utc(2024, 3, 9, 2, 0)
    assert is_market_open(Market.KRX, saturday, 'NO_CHECK')
    assert is_market_open(Market.US, saturday, guard_enabled=False)
