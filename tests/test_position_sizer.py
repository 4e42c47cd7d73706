#!/usr/bin/env python
"""
Unit tests for fixed-fractional position sizing
"""
import sys
sys.path.insert(0, '.')

from decimal import Decimal

import pytest

from core.errors import InvalidInputError
from core.types import Market
from risk.position_sizer import PositionSizer, round_order_quantity


def test_btc_example_is_capped_at_quarter_of_account():
    sizer = PositionSizer(risk_pct=Decimal('0.01'), max_position_pct=Decimal('0.25'))
    result = sizer.calculate(Decimal('10000000'), Decimal('93000'), Decimal('91500'))

    assert result.risk_amount == Decimal('100000')
    assert result.limited_by_max_exposure
    assert result.position_value == Decimal('2500000')
    assert abs(result.position_size - Decimal('26.88')) < Decimal('0.01')


def test_uncapped_size_is_risk_over_stop_distance():
    sizer = PositionSizer(risk_pct=Decimal('0.01'), max_position_pct=Decimal('1'))
    result = sizer.calculate(Decimal('10000000'), Decimal('93000'), Decimal('91500'))

    assert not result.limited_by_max_exposure
    assert abs(result.position_size - Decimal('66.6667')) < Decimal('0.0001')
    assert abs(result.position_value - Decimal('6200000')) < Decimal('0.01')


@pytest.mark.parametrize('entry,stop', [('100', '99'), ('50000', '52000'), ('12.5', '10'), ('93000', '92999')])
def test_position_value_never_exceeds_cap(entry, stop):
    sizer = PositionSizer(risk_pct=Decimal('0.02'), max_position_pct=Decimal('0.25'))
    account = Decimal('5000000')
    result = sizer.calculate(account, Decimal(entry), Decimal(stop))
    assert result.position_value <= account * Decimal('0.25')


def test_stop_equal_to_entry_is_invalid():
    sizer = PositionSizer(risk_pct=Decimal('0.01'), max_position_pct=Decimal('0.25'))
    with pytest.raises(InvalidInputError):
        sizer.calculate(Decimal('1000000'), Decimal('100'), Decimal('100'))


def test_non_positive_inputs_are_invalid():
    sizer = PositionSizer(risk_pct=Decimal('0.01'), max_position_pct=Decimal('0.25'))
    with pytest.raises(InvalidInputError):
        sizer.calculate(Decimal('0'), Decimal('100'), Decimal('95'))
    with pytest.raises(InvalidInputError):
        sizer.calculate(Decimal('1000000'), Decimal('-1'), Decimal('95'))
    with pytest.raises(InvalidInputError):
        sizer.calculate(Decimal('1000000'), Decimal('100'), Decimal('95'), risk_pct=Decimal('1.5'))


def test_short_side_stop_above_entry_sizes_the_same():
    sizer = PositionSizer(risk_pct=Decimal('0.01'), max_position_pct=Decimal('1'))
    below = sizer.calculate(Decimal('1000000'), Decimal('100'), Decimal('98'))
    above = sizer.calculate(Decimal('1000000'), Decimal('100'), Decimal('102'))
    assert below.position_size == above.position_size


def test_order_quantity_rounding():
    assert round_order_quantity(Market.CRYPTO, Decimal('26.881720430107')) == Decimal('26.88172043')
    assert round_order_quantity(Market.KRX, Decimal('12.99')) == Decimal('12')
    assert round_order_quantity(Market.US, Decimal('0.7')) == Decimal('0')
