"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def _as_dict(value: Any) -> Dict:
    to_dict = getattr(value, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    return dict(value)


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy, or dict objects."""
    if source is None:
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        if isinstance(candidate, Mapping):
            return _as_dict(candidate)
        return {}

    try:
        candidate = source[section]  # type: ignore[index]
    except (KeyError, TypeError, IndexError):
        return {}
    if isinstance(candidate, Mapping):
        return _as_dict(candidate)
    return {}
