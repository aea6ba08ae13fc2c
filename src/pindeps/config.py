"""User configuration: remote store, cache root, and build environments."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from pindeps.errors import ConfigError

BackendName = Literal["docker", "host"]

HOME_ENV = "PINDEPS_HOME"
CACHE_ENV = "PINDEPS_CACHE"
CONFIG_FILENAME = "config.json"

DEFAULT_STORE_URL = "https://artifacts.invalid/pindeps"
DEFAULT_ENVIRONMENTS = {"centos": "pindeps/centos_build:latest"}


@dataclass(frozen=True, slots=True)
class Config:
    store_url: str = DEFAULT_STORE_URL
    cache_dir: Path = field(default_factory=lambda: pindeps_home() / "cache")
    environments: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENVIRONMENTS))
    backend: BackendName = "docker"
    fetch_timeout: float = 60.0
    fetch_retries: int = 3
    retry_delay: float = 1.0
    require_integrity: bool = False
    build_script: str = "./BUILD"

    def image_for(self, environment: str) -> str | None:
        return self.environments.get(environment)


def pindeps_home() -> Path:
    raw = os.environ.get(HOME_ENV)
    if raw:
        return Path(raw)
    return Path.home() / ".pindeps"


def config_path() -> Path:
    return pindeps_home() / CONFIG_FILENAME


def default_config() -> Config:
    return _with_cache_override(Config())


def load_config(path: str | Path | None = None) -> Config:
    """Read the config file, falling back to defaults when it does not exist.

    The cache root is resolved here, once, and stays fixed for the lifetime of
    the returned object. ``PINDEPS_CACHE`` takes precedence over the file.
    """
    cfg_path = Path(path) if path is not None else config_path()
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default_config()
    return _with_cache_override(parse_config(raw, path=cfg_path))


def parse_config(raw: str, *, path: Path | None = None) -> Config:
    context = {"path": str(path)} if path is not None else {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError("Invalid config JSON.", hint=str(exc), context=context) from exc
    if not isinstance(payload, dict):
        raise ConfigError("Config must be a JSON object.", context=context)

    defaults = Config()
    environments = payload.get("environments", defaults.environments)
    if not isinstance(environments, dict) or not all(
        isinstance(k, str) and isinstance(v, str) and v for k, v in environments.items()
    ):
        raise ConfigError(
            "Invalid config `environments` value.",
            hint="Map each environment name to a container image reference.",
            context=context,
        )
    backend = _optional(payload, "backend", str, defaults.backend, context)
    if backend not in ("docker", "host"):
        raise ConfigError(
            f"Unsupported backend `{backend}`.",
            hint="Use `docker` or `host`.",
            context=context,
        )
    retries = _optional(payload, "fetch_retries", int, defaults.fetch_retries, context)
    if retries < 1:
        raise ConfigError("Config `fetch_retries` must be at least 1.", context=context)

    cache_raw = _optional(payload, "cache_dir", str, "", context)
    return Config(
        store_url=_optional(payload, "store_url", str, defaults.store_url, context),
        cache_dir=Path(cache_raw) if cache_raw else defaults.cache_dir,
        environments=dict(environments),
        backend=backend,
        fetch_timeout=float(
            _optional(payload, "fetch_timeout", (int, float), defaults.fetch_timeout, context)
        ),
        fetch_retries=retries,
        retry_delay=float(
            _optional(payload, "retry_delay", (int, float), defaults.retry_delay, context)
        ),
        require_integrity=_optional(
            payload, "require_integrity", bool, defaults.require_integrity, context
        ),
        build_script=_optional(payload, "build_script", str, defaults.build_script, context),
    )


def serialize_config(config: Config) -> str:
    payload = {
        "store_url": config.store_url,
        "cache_dir": str(config.cache_dir),
        "environments": dict(sorted(config.environments.items())),
        "backend": config.backend,
        "fetch_timeout": config.fetch_timeout,
        "fetch_retries": config.fetch_retries,
        "retry_delay": config.retry_delay,
        "require_integrity": config.require_integrity,
        "build_script": config.build_script,
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def write_config(config: Config, path: str | Path | None = None) -> Path:
    cfg_path = Path(path) if path is not None else config_path()
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = cfg_path.with_suffix(".tmp")
    temp_path.write_text(serialize_config(config), encoding="utf-8")
    os.replace(temp_path, cfg_path)
    return cfg_path


def _with_cache_override(config: Config) -> Config:
    override = os.environ.get(CACHE_ENV)
    if override:
        return replace(config, cache_dir=Path(override))
    return config


def _optional(
    payload: dict[str, Any],
    key: str,
    kind: type | tuple[type, ...],
    default: Any,
    context: dict[str, str],
) -> Any:
    if key not in payload:
        return default
    value = payload[key]
    # bool is an int subclass; only accept it where bool is asked for
    if isinstance(value, bool) and kind is not bool:
        raise ConfigError(f"Invalid config `{key}` value.", context=context)
    if not isinstance(value, kind):
        raise ConfigError(f"Invalid config `{key}` value.", context=context)
    return value
