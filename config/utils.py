"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

import copy
from typing import Any, Dict, Optional


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dict section from Config, SectionProxy, or plain dict objects."""
    if source is None:
        return {}

    section_fn = getattr(source, 'section', None)
    if callable(section_fn):
        candidate = section_fn(section)
        if isinstance(candidate, dict):
            return candidate

    if isinstance(source, dict):
        candidate = source.get(section, {})
        if isinstance(candidate, dict):
            return copy.deepcopy(candidate)
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        if isinstance(candidate, dict):
            return copy.deepcopy(candidate)
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            return to_dict()

    return {}


def resolve_section(override: Optional[Dict], section: str) -> Dict:
    """Use an explicitly injected section, else the process-wide config."""
    if override is not None:
        return dict(override)
    from config import config
    return get_config_section(config, section)
