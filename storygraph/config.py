from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from ._util import as_float, as_int
from .synthesis_client import DEFAULT_BASE_URL, DEFAULT_MODEL

logger = logging.getLogger(__name__)

_CONFIG_SECTION = "storygraph"
_ENV_PREFIX = "STORYGRAPH_"


class ConfigError(ValueError):
    pass


def storygraph_home(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    raw = env.get("STORYGRAPH_HOME")
    return Path(raw).expanduser() if raw else Path.home() / ".storygraph"


def _read_home_env(home: Path) -> dict[str, str]:
    """KEY=value pairs from $STORYGRAPH_HOME/.env, where operators keep the LLM key."""
    try:
        lines = (home / ".env").read_text(encoding="utf-8").splitlines()
    except OSError:
        return {}
    out: dict[str, str] = {}
    for raw in lines:
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        name, sep, value = line.partition("=")
        if not sep or not name.strip() or name.lstrip().startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        out[name.strip()] = value
    return out


@dataclass(frozen=True)
class Settings:
    db_path: Path
    window_hours: int = 48
    max_articles: int = 100
    similarity_threshold: float = 0.35
    min_cluster_size: int = 2
    synthesis_timeout_seconds: float = 90.0
    llm_api_key: str | None = None
    llm_model: str = DEFAULT_MODEL
    llm_base_url: str = DEFAULT_BASE_URL
    lock_dir: Path | None = None

    @classmethod
    def defaults(cls, home: Path) -> "Settings":
        return cls(db_path=home / "data" / "storygraph.sqlite3")

    def redacted(self) -> dict[str, Any]:
        """Settings as a JSON-friendly dict with the API key masked."""
        out: dict[str, Any] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if f.name == "llm_api_key":
                v = "***" if v else None
            elif isinstance(v, Path):
                v = str(v)
            out[f.name] = v
        return out


def _int_at_least(minimum: int) -> Callable[[str, Any], int]:
    def conv(name: str, v: Any) -> int:
        n = as_int(v)
        if n is None or n < minimum:
            raise ConfigError(f"{name} must be an integer >= {minimum}, got {v!r}")
        return n

    return conv


def _threshold(name: str, v: Any) -> float:
    x = as_float(v)
    if x is None or not 0.0 < x <= 1.0:
        raise ConfigError(f"{name} must be a number in (0, 1], got {v!r}")
    return x


def _positive_float(name: str, v: Any) -> float:
    x = as_float(v)
    if x is None or x <= 0:
        raise ConfigError(f"{name} must be a positive number, got {v!r}")
    return x


def _path(name: str, v: Any) -> Path:
    if not isinstance(v, (str, Path)) or not str(v).strip():
        raise ConfigError(f"{name} must be a non-empty path, got {v!r}")
    return Path(str(v).strip()).expanduser()


def _text(name: str, v: Any) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ConfigError(f"{name} must be a non-empty string, got {v!r}")
    return v.strip()


_CONVERTERS: dict[str, Callable[[str, Any], Any]] = {
    "db_path": _path,
    "window_hours": _int_at_least(1),
    "max_articles": _int_at_least(1),
    "similarity_threshold": _threshold,
    "min_cluster_size": _int_at_least(2),
    "synthesis_timeout_seconds": _positive_float,
    "llm_api_key": _text,
    "llm_model": _text,
    "llm_base_url": _text,
    "lock_dir": _path,
}


def _apply(settings: Settings, values: Mapping[str, Any], *, origin: str) -> Settings:
    changes: dict[str, Any] = {}
    for key, raw in values.items():
        conv = _CONVERTERS.get(key)
        if conv is None:
            logger.warning("Ignoring unknown setting %r from %s", key, origin)
            continue
        if raw is None:
            continue
        changes[key] = conv(f"{origin}:{key}", raw)
    return replace(settings, **changes) if changes else settings


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    section = data.get(_CONFIG_SECTION, data)
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: '{_CONFIG_SECTION}' must be a mapping")
    return section


def load_settings(config_path: Path | None = None, env: Mapping[str, str] | None = None) -> Settings:
    """Resolve settings: defaults < YAML file < environment.

    Without *config_path*, ``$STORYGRAPH_CONFIG`` or
    ``$STORYGRAPH_HOME/storygraph.yaml`` is read when it exists. The API key
    comes from ``STORYGRAPH_LLM_API_KEY``, ``GROQ_API_KEY`` or the ``.env``
    file in STORYGRAPH_HOME, in that order.
    """
    env = os.environ if env is None else env
    home = storygraph_home(env)
    settings = Settings.defaults(home)

    if config_path is None:
        raw_cfg = env.get(f"{_ENV_PREFIX}CONFIG")
        candidate = Path(raw_cfg).expanduser() if raw_cfg else home / "storygraph.yaml"
        if raw_cfg or candidate.exists():
            config_path = candidate
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        settings = _apply(settings, _read_yaml(path), origin=str(path))
        logger.debug("Loaded settings from %s", path)

    env_values: dict[str, Any] = {}
    for name in _CONVERTERS:
        v = env.get(_ENV_PREFIX + name.upper())
        if v is not None and v.strip():
            env_values[name] = v
    if "llm_api_key" not in env_values:
        key = env.get("GROQ_API_KEY") or None
        if key is None and settings.llm_api_key is None:
            key = _read_home_env(home).get("GROQ_API_KEY") or None
        if key:
            env_values["llm_api_key"] = key
    return _apply(settings, env_values, origin="env")
