"""
Layered configuration for ftsync.

Sources, lowest precedence first:

  1. dataclass defaults below
  2. the first YAML file found (./ftsync.yml, ~/.config/ftsync/config.yml, /etc/ftsync/config.yml)
  3. environment: FTSYNC_<SECTION>__<KEY>=value (a `.env` file is loaded first)
  4. CLI overrides

`${VAR}` placeholders in string values are expanded from the environment.
"""

from __future__ import annotations

import os
import re
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv


@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class FivetranSection:
    base_url: str = "https://api.fivetran.com/v1"
    api_key: str = ""
    api_secret: str = ""  # never logged
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 3
    page_limit: int = 1000


@dataclass
class ReconcileSection:
    patch_batch_size: int = 100
    rate_limit_backoff_sec: float = 5.0
    search_paths: list[str] = field(default_factory=list)


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"
    file_level: str = "DEBUG"


@dataclass
class AppConfig:
    app: AppSection = field(default_factory=AppSection)
    fivetran: FivetranSection = field(default_factory=FivetranSection)
    reconcile: ReconcileSection = field(default_factory=ReconcileSection)
    logging: LoggingSection = field(default_factory=LoggingSection)

    @property
    def run_id(self) -> str:
        """Identifier shared by every log line of this process; generated on first use."""
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


_SECTIONS = {f.name: f.default_factory for f in fields(AppConfig)}

DEFAULT_FILES: Tuple[str, ...] = (
    "./ftsync.yml",
    os.path.expanduser("~/.config/ftsync/config.yml"),
    "/etc/ftsync/config.yml",
)

# Credentials variables understood by the Fivetran Terraform provider.
PROVIDER_ENV = {"api_key": "FIVETRAN_APIKEY", "api_secret": "FIVETRAN_APISECRET"}

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off", ""}
_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _merge(into: Dict[str, Any], layer: Optional[Dict[str, Any]]) -> None:
    for key, value in (layer or {}).items():
        if isinstance(value, dict) and isinstance(into.get(key), dict):
            _merge(into[key], value)
        else:
            into[key] = value


def _file_layer(files: Tuple[str, ...]) -> Dict[str, Any]:
    path = next((p for p in files if p and os.path.isfile(p)), None)
    if path is None:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


def _env_layer(prefix: str) -> Dict[str, Any]:
    layer: Dict[str, Any] = {}
    for name, value in os.environ.items():
        if not name.startswith(prefix) or "__" not in name:
            continue
        section, _, key = name[len(prefix):].lower().partition("__")
        layer.setdefault(section, {})[key] = value
    return layer


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _coerce(where: str, default: Any, value: Any) -> Any:
    """Convert `value` to the type of the field's default (env and CLI values arrive as text)."""
    if value is None or default is None:
        return value
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(value)
        if isinstance(default, (int, float)):
            return type(default)(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {where}: {value!r}") from None
    if isinstance(default, list) and isinstance(value, str):
        return [p for p in value.split(os.pathsep) if p]
    return value


def _build_section(name: str, values: Dict[str, Any]) -> Any:
    factory = _SECTIONS[name]
    defaults = asdict(factory())
    unknown = set(values) - set(defaults)
    if unknown:
        raise ValueError(f"Unknown configuration key(s) in '{name}': {', '.join(sorted(unknown))}")
    section = factory()
    for key, value in values.items():
        setattr(section, key, _coerce(f"{name}.{key}", defaults[key], value))
    return section


def _validate(cfg: AppConfig) -> None:
    if cfg.app.dry_run:
        return
    missing = [
        f"fivetran.{key}"
        for key in ("base_url", "api_key", "api_secret")
        if not getattr(cfg.fivetran, key)
    ]
    if missing:
        raise ValueError("Missing required configuration for non-dry run: " + ", ".join(missing))


def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = DEFAULT_FILES,
    env_prefix: str = "FTSYNC_",
    dotenv: bool = True,
) -> AppConfig:
    """
    Build the typed configuration.

    Empty credentials fall back to FIVETRAN_APIKEY / FIVETRAN_APISECRET.
    Credentials are required unless `app.dry_run` is set.
    """
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True), override=False)

    raw: Dict[str, Any] = {name: {} for name in _SECTIONS}
    for layer in (_file_layer(files), _env_layer(env_prefix), cli_overrides):
        _merge(raw, layer)
    raw = _expand(raw)

    unknown = set(raw) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    cfg = AppConfig(**{name: _build_section(name, values or {}) for name, values in raw.items()})
    for key, var in PROVIDER_ENV.items():
        if not getattr(cfg.fivetran, key) and os.environ.get(var):
            setattr(cfg.fivetran, key, os.environ[var])

    _validate(cfg)
    return cfg
