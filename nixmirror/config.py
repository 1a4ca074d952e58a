"""Runtime configuration loaded from YAML with CLI overrides."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .retry import RetryPolicy

DEFAULT_CACHE_URL = "https://cache.nixos.org"


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    cache_url: str = DEFAULT_CACHE_URL
    mirror_dir: str = "mirror"
    concurrency: int = 8
    delay_sec: float = 0.0
    max_retries: int = 4
    integrity_retries: int = 1
    backoff_base_sec: float = 0.5
    backoff_max_sec: float = 30.0
    timeout_sec: int = 30
    report_path: str = ""
    progress_every: int = 100

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            integrity_retries=self.integrity_retries,
            backoff_base_sec=self.backoff_base_sec,
            backoff_max_sec=self.backoff_max_sec,
        )

    def validate(self) -> None:
        if not self.cache_url.startswith(("http://", "https://")):
            raise ConfigError(f"cache_url must be an http(s) URL: {self.cache_url!r}")
        if not self.mirror_dir:
            raise ConfigError("mirror_dir must not be empty")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.max_retries < 0 or self.integrity_retries < 0:
            raise ConfigError("retry counts must not be negative")
        if self.backoff_base_sec < 0 or self.backoff_max_sec < 0:
            raise ConfigError("backoff delays must not be negative")
        if self.timeout_sec <= 0:
            raise ConfigError("timeout_sec must be positive")


_CASTS = {"str": str, "int": int, "float": float}


def load_config(config_path: Path | None = None, **overrides: Any) -> Config:
    """Load config.yaml (if given), apply defaults and non-None overrides."""
    data: Any = {}
    if config_path is not None:
        try:
            data = yaml.safe_load(Path(config_path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("config.yaml must be a mapping")

    known = {f.name: f for f in fields(Config)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(map(str, unknown))}")
    data.update({k: v for k, v in overrides.items() if v is not None})

    values: dict[str, Any] = {}
    for name, value in data.items():
        if name not in known:
            raise ConfigError(f"unknown config key: {name}")
        cast = _CASTS[known[name].type]
        try:
            values[name] = cast(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid value for {name}: {value!r}") from exc

    config = Config(**values)
    config.cache_url = config.cache_url.rstrip("/")
    config.validate()
    return config
