#!/usr/bin/env python
"""
Tests for configuration loading and the typed trading settings
"""
import sys
sys.path.insert(0, '.')

from decimal import Decimal

import pytest

from config.config_loader import Config
from config.settings import TradingSettings, require_live_credentials
from config.utils import parse_bool, parse_list
from core.errors import FatalConfigError
from core.types import Broker, Market


def test_defaults_cover_every_market():
    settings = TradingSettings.from_config({})
    assert settings.dry_run is True
    assert settings.execute_markets == [Market.CRYPTO, Market.KRX, Market.US]
    assert settings.brokers == [Broker.UPBIT, Broker.KIS]
    assert settings.interval_for(Market.CRYPTO) == 60
    assert settings.stop_loss_pct == Decimal('0.05')


def test_env_style_values_are_parsed():
    settings = TradingSettings.from_config({'trading': {
        'dry_run': 'false',
        'execute_markets': 'kr, crypto, KRX',
        'loop_interval_sec': {'CRYPTO': '30'},
        'run_mode': 'extended',
        'min_confidence': '0.8',
    }})
    assert settings.dry_run is False
    assert settings.execute_markets == [Market.KRX, Market.CRYPTO]
    assert settings.brokers == [Broker.KIS, Broker.UPBIT]
    assert settings.interval_for(Market.CRYPTO) == 30
    assert settings.run_mode == 'EXTENDED'
    assert settings.min_confidence == 0.8


@pytest.mark.parametrize('trading', [
    {'run_mode': 'overnight'},
    {'execute_markets': 'CRYPTO,FOREX'},
    {'dry_run': 'maybe'},
    {'stop_loss_pct': '1.5'},
    {'min_confidence': 'high'},
    {'loop_interval_sec': {'US': 0}},
    {'max_candidates_per_market': 0},
])
def test_invalid_settings_are_fatal(trading):
    with pytest.raises(FatalConfigError):
        TradingSettings.from_config({'trading': trading})


def test_live_trading_requires_credentials_for_used_brokers():
    settings = TradingSettings.from_config({'trading': {'dry_run': False, 'execute_markets': 'CRYPTO'}})
    with pytest.raises(FatalConfigError) as exc:
        require_live_credentials(settings, {'brokers': {'upbit': {'access_key': 'a'}}})
    assert 'brokers.upbit.secret_key' in str(exc.value)

    # KIS credentials are irrelevant when only crypto is traded
    require_live_credentials(settings, {'brokers': {'upbit': {'access_key': 'a', 'secret_key': 's'}}})


def test_dry_run_skips_credential_check():
    require_live_credentials(TradingSettings.from_config({}), {})


def test_scalar_helpers():
    assert parse_bool(None, True) is True
    assert parse_bool('Off', True) is False
    assert parse_list('a, ,b') == ['a', 'b']
    assert parse_list('') is None


def test_loader_expands_environment(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        'trading:\n'
        '  dry_run: ${TEST_DRY_RUN:-true}\n'
        '  strategy: ${TEST_STRATEGY}\n'
        'brokers:\n'
        '  upbit:\n'
        '    access_key: ${TEST_UPBIT_KEY}\n'
    )
    monkeypatch.delenv('TEST_DRY_RUN', raising=False)
    monkeypatch.delenv('TEST_STRATEGY', raising=False)
    monkeypatch.setenv('TEST_UPBIT_KEY', 'key-123')

    cfg = Config(str(path))
    assert cfg.section('trading').get('dry_run') == 'true'
    assert cfg.section('trading').get('strategy', 'fallback') == 'fallback'
    assert cfg.section('brokers').upbit.access_key == 'key-123'
    assert TradingSettings.from_config(cfg).strategy == 'ai-signal'


def test_missing_config_file(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'absent.yaml'))
