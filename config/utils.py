"""Helper utilities for reading configuration sections and env-style scalar values."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

_TRUE_VALUES = {'1', 'true', 'yes', 'y', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'n', 'off'}


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy, or dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
    else:
        getter = getattr(source, 'get', None)
        candidate = getter(section, {}) if callable(getter) else {}

    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        candidate = to_dict()
    if isinstance(candidate, dict):
        return dict(candidate)
    return {}


def parse_bool(value: Any, default: bool) -> bool:
    """Interpret env-style booleans; ``None`` yields ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def parse_list(value: Any) -> Optional[List[str]]:
    """Accept either a YAML list or a comma separated string."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        items = [part.strip() for part in str(value).split(',')]
    items = [item for item in items if item]
    return items or None
