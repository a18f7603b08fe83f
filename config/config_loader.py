import copy
import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# ${NAME} or ${NAME:-fallback}; unset names without a fallback stay literal.
_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def _expand(value: str) -> str:
    def repl(match):
        name, fallback = match.group(1), match.group(2)
        if name in os.environ:
            return os.environ[name]
        return fallback if fallback is not None else match.group(0)
    return _ENV_PATTERN.sub(repl, value)


class SectionProxy(Mapping):
    """Read-only view of a config section; nested dicts come back wrapped."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    @staticmethod
    def _wrap(value: Any) -> Any:
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return self._wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


class Config:
    """YAML settings for the signal service.

    The file is found via ``config_path``, then ``SIGNAL_CONFIG_PATH``, then
    the ``config.yaml`` shipped next to this module. Components take plain
    dict sections from :meth:`section` so they never share mutable state with
    the loader.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('SIGNAL_CONFIG_PATH') or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and '${' in node:
            return _expand(node)
        return node

    def sections(self) -> List[str]:
        return list(self._data)

    def section(self, name: str) -> Dict[str, Any]:
        """Detached copy of a top-level section, ``{}`` when absent."""
        value = self._data.get(name)
        if not isinstance(value, dict):
            return {}
        return copy.deepcopy(value)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return SectionProxy._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return SectionProxy._wrap(value)

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
