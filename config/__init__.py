from .config_loader import Config, SectionProxy, config
from .settings import TradingSettings

__all__ = ['Config', 'SectionProxy', 'config', 'TradingSettings']
