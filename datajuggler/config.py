"""
Layered configuration for data sources.

Merge order (later overrides earlier):
    defaults < config files (YAML / JSON) < .env file < DJ_* environment
    variables < explicit overrides

Environment keys drop the prefix, are lower-cased and split on ``__``:
``DJ_DATASOURCES__DEFAULT__CONNECTOR=memory`` becomes
``{"datasources": {"default": {"connector": "memory"}}}``.

Usage:
    ```python
    config = DataSourceConfig.load(paths=["juggler.yaml"], env_file=".env")
    ds = DataSource.from_config(config, "default")
    ```
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .faults import ConfigFault

logger = logging.getLogger("datajuggler.config")

__all__ = ["DataSourceConfig"]

DEFAULTS: Dict[str, Any] = {
    "datasources": {
        "default": {
            "connector": "memory",
            "connection_timeout": 5.0,
        },
    },
}


class DataSourceConfig:
    """Merged configuration tree with dotted-path lookup."""

    def __init__(self, env_prefix: str = "DJ_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = copy.deepcopy(DEFAULTS)

    @classmethod
    def load(
        cls,
        paths: Optional[Iterable[str]] = None,
        env_prefix: str = "DJ_",
        env_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        use_environ: bool = True,
    ) -> DataSourceConfig:
        config = cls(env_prefix=env_prefix)
        for path in paths or ():
            config.load_file(path)
        if env_file:
            config._load_env_file(env_file)
        if use_environ:
            config._load_from_env()
        if overrides:
            config._merge_dict(config.config_data, copy.deepcopy(overrides))
        return config

    # ── Sources ──────────────────────────────────────────────────────────

    def load_file(self, path: str) -> None:
        """Merge a ``.yaml`` / ``.yml`` / ``.json`` file."""
        file_path = Path(path)
        if not file_path.exists():
            raise ConfigFault(f"Config file not found: {path}", path=str(path))
        if file_path.suffix in (".yaml", ".yml"):
            self._load_yaml_file(file_path)
        elif file_path.suffix == ".json":
            self._load_json_file(file_path)
        else:
            raise ConfigFault(f"Unsupported config file type: {file_path.suffix}", path=str(path))
        logger.debug(f"Loaded config file {path}")

    def _load_json_file(self, path: Path) -> None:
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigFault(f"Invalid JSON in {path}: {exc}", path=str(path)) from exc
        self._merge_object(data, path)

    def _load_yaml_file(self, path: Path) -> None:
        import yaml

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigFault(f"Invalid YAML in {path}: {exc}", path=str(path)) from exc
        if data:
            self._merge_object(data, path)

    def _merge_object(self, data: Any, path: Path) -> None:
        if not isinstance(data, dict):
            raise ConfigFault(f"Config file {path} must contain a mapping", path=str(path))
        self._merge_dict(self.config_data, data)

    def _load_env_file(self, path: str) -> None:
        """Merge the prefixed keys of a ``.env`` file."""
        from dotenv import dotenv_values

        if not Path(path).exists():
            return
        for key, value in dotenv_values(path).items():
            if key.startswith(self.env_prefix) and value is not None:
                self._set_nested(key, value)

    def _load_from_env(self) -> None:
        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str) -> None:
        """Convert DJ_DATASOURCES__DEFAULT__FILE to a nested dict entry."""
        parts = key[len(self.env_prefix):].lower().split("__")

        current = self.config_data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        lowered = value.lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
        if lowered in ("null", "none"):
            return None

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict) -> None:
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    # ── Access ───────────────────────────────────────────────────────────

    def get(self, path: str, default: Any = None) -> Any:
        """Get config value by dot-separated path."""
        current: Any = self.config_data
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def datasource(self, name: str = "default") -> Dict[str, Any]:
        """Settings of data source ``name``."""
        section = self.get(f"datasources.{name}")
        if not isinstance(section, dict):
            raise ConfigFault(f"No datasource configured under {name!r}", datasource=name)
        return copy.deepcopy(section)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.config_data)

    def __repr__(self) -> str:
        return f"<DataSourceConfig datasources={list(self.get('datasources', {}))}>"
