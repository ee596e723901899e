"""
Engine configuration.

Provides:
- Query, cache and source configuration sections
- YAML loading
- Environment variable overrides
- Configuration validation
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from docfed.errors import ConfigError, UnknownStrategyError
from docfed.models import FederationStrategy

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCFED_"


@dataclass
class QueryConfig:
    """Query execution configuration."""
    default_strategy: str = FederationStrategy.VIRTUAL.value
    slow_query_threshold_seconds: float = 1.0
    max_result_rows: Optional[int] = None  # None = unlimited

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_strategy": self.default_strategy,
            "slow_query_threshold_seconds": self.slow_query_threshold_seconds,
            "max_result_rows": self.max_result_rows,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryConfig":
        return cls(
            default_strategy=data.get("default_strategy", FederationStrategy.VIRTUAL.value),
            slow_query_threshold_seconds=data.get("slow_query_threshold_seconds", 1.0),
            max_result_rows=data.get("max_result_rows"),
        )


@dataclass
class CacheConfig:
    """Materialized/hybrid cache and snapshot configuration."""
    refresh_interval_seconds: float = 15 * 60
    snapshot_history: int = 5
    snapshot_dir: Optional[str] = None  # None = in-memory snapshots

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(seconds=self.refresh_interval_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "snapshot_history": self.snapshot_history,
            "snapshot_dir": self.snapshot_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        return cls(
            refresh_interval_seconds=data.get("refresh_interval_seconds", 15 * 60),
            snapshot_history=data.get("snapshot_history", 5),
            snapshot_dir=data.get("snapshot_dir"),
        )


@dataclass
class SourceConfig:
    """Source adapter I/O configuration."""
    connect_timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connect_timeout_seconds": self.connect_timeout_seconds,
            "fetch_timeout_seconds": self.fetch_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        return cls(
            connect_timeout_seconds=data.get("connect_timeout_seconds", 10.0),
            fetch_timeout_seconds=data.get("fetch_timeout_seconds", 30.0),
        )


# env var -> (section, key, converter)
_ENV_OVERRIDES = {
    "REFRESH_INTERVAL_SECONDS": ("cache", "refresh_interval_seconds", float),
    "CONNECT_TIMEOUT_SECONDS": ("sources", "connect_timeout_seconds", float),
    "FETCH_TIMEOUT_SECONDS": ("sources", "fetch_timeout_seconds", float),
    "SLOW_QUERY_SECONDS": ("query", "slow_query_threshold_seconds", float),
    "DEFAULT_STRATEGY": ("query", "default_strategy", str),
    "MAX_RESULT_ROWS": ("query", "max_result_rows", int),
    "SNAPSHOT_DIR": ("cache", "snapshot_dir", str),
}


@dataclass
class EngineConfig:
    """
    Complete configuration for a FederationEngine.

    Example YAML:

        query:
          default_strategy: hybrid
          slow_query_threshold_seconds: 2
        cache:
          refresh_interval_seconds: 300
        sources:
          fetch_timeout_seconds: 15
    """
    query: QueryConfig = field(default_factory=QueryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sources: SourceConfig = field(default_factory=SourceConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query.to_dict(),
            "cache": self.cache.to_dict(),
            "sources": self.sources.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("Engine configuration must be a mapping")
        for section in ("query", "cache", "sources"):
            if data.get(section) is not None and not isinstance(data[section], dict):
                raise ConfigError(f"Configuration section '{section}' must be a mapping")
        config = cls(
            query=QueryConfig.from_dict(data.get("query") or {}),
            cache=CacheConfig.from_dict(data.get("cache") or {}),
            sources=SourceConfig.from_dict(data.get("sources") or {}),
        )
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigError: If the file cannot be read or holds invalid values
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        logger.info(f"Loaded engine configuration from {path}")
        return cls.from_dict(data)

    @classmethod
    def load(
        cls,
        path: Optional[str | Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "EngineConfig":
        """Load from an optional YAML file, then apply environment overrides."""
        config = cls.from_yaml(path) if path else cls()
        return config.with_env_overrides(os.environ if env is None else env)

    def with_env_overrides(self, env: Mapping[str, str]) -> "EngineConfig":
        """Return a copy with ``DOCFED_*`` environment overrides applied."""
        data = self.to_dict()
        for suffix, (section, key, convert) in _ENV_OVERRIDES.items():
            name = ENV_PREFIX + suffix
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            try:
                data[section][key] = convert(raw)
            except ValueError:
                raise ConfigError(
                    f"Invalid value for {name}: {raw!r}", {"variable": name}
                ) from None
            logger.debug(f"Config override {name}={raw}")
        return EngineConfig.from_dict(data)

    def validate(self) -> List[str]:
        """
        Check every value.

        Returns:
            An empty list when the configuration is valid

        Raises:
            ConfigError: Listing every invalid value
        """
        errors = []

        try:
            FederationStrategy.parse(self.query.default_strategy)
        except UnknownStrategyError:
            errors.append(f"query.default_strategy: unknown strategy {self.query.default_strategy!r}")

        if not _is_number(self.query.slow_query_threshold_seconds) or self.query.slow_query_threshold_seconds < 0:
            errors.append("query.slow_query_threshold_seconds must be >= 0")

        rows = self.query.max_result_rows
        if rows is not None and (not isinstance(rows, int) or isinstance(rows, bool) or rows < 0):
            errors.append("query.max_result_rows must be a non-negative integer or null")

        if not _is_number(self.cache.refresh_interval_seconds) or self.cache.refresh_interval_seconds <= 0:
            errors.append("cache.refresh_interval_seconds must be > 0")

        if not isinstance(self.cache.snapshot_history, int) or self.cache.snapshot_history < 1:
            errors.append("cache.snapshot_history must be >= 1")

        for key in ("connect_timeout_seconds", "fetch_timeout_seconds"):
            value = getattr(self.sources, key)
            if not _is_number(value) or value <= 0:
                errors.append(f"sources.{key} must be > 0")

        if errors:
            raise ConfigError("Invalid engine configuration: " + "; ".join(errors), {"errors": errors})
        return errors


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
