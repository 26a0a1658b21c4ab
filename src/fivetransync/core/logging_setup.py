"""
Central logging for FivetranSync.

- Console handler on stderr (INFO..CRITICAL by default)
- Daily rotated file handler: logs/app.log (DEBUG)
- Per-run action file: logs/YYYY-MM-DD/<action>_<run_id>.log (DEBUG)
- Secret redaction for basic/bearer auth, api keys/secrets and passwords
- UTC timestamps in ISO-8601
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "run=%(run_id)s action=%(action)s resource=%(resource)s | "
    "%(message)s"
)


class MaskSecretsFilter(logging.Filter):
    """
    Redact Fivetran credentials from log records (message and %-args).
    """

    _patterns = [
        re.compile(r"(Authorization:\s*(?:Basic|Bearer)\s+)([A-Za-z0-9+/=:._-]+)", re.IGNORECASE),
        re.compile(r"(api[_-]?(?:key|secret)\s*[=:]\s*)([A-Za-z0-9+/=._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\bsecret\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
    ]

    @classmethod
    def mask(cls, text: str) -> str:
        for pat in cls._patterns:
            text = pat.sub(r"\1***REDACTED***", text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self.mask(str(v)) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.mask(a) if isinstance(a, str) else a for a in record.args)
        return True


def _utc_formatter() -> logging.Formatter:
    f = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[assignment]
    return f


def _level(name: str, fallback: int) -> int:
    return getattr(logging, str(name).upper(), fallback)


def _drop_handlers(logger: logging.Logger, kind: type, keep: Optional[str] = None) -> bool:
    """
    Remove handlers of `kind` from `logger`, except one whose file is `keep`.
    Returns True when a handler pointing to `keep` is still attached.
    """
    kept = False
    for h in list(logger.handlers):
        if type(h) is not kind:
            continue
        target = os.path.abspath(getattr(h, "baseFilename", "")) if keep else None
        if keep and target == keep:
            kept = True
            continue
        logger.removeHandler(h)
        h.close()
    return kept


def _configure_base(base: logging.Logger, *, base_dir: str, console_level: str, file_level: str) -> None:
    """
    Point the base logger at exactly one stderr console handler and one
    rotating app.log under `base_dir` (pytest swaps stdio and cwd between tests).
    """
    formatter = _utc_formatter()
    mask = MaskSecretsFilter()

    _drop_handlers(base, logging.StreamHandler)
    console = logging.StreamHandler(stream=sys.stderr)
    console.setLevel(_level(console_level, logging.INFO))
    console.setFormatter(formatter)
    console.addFilter(mask)
    base.addHandler(console)

    os.makedirs(base_dir, exist_ok=True)
    app_log = os.path.abspath(os.path.join(base_dir, "app.log"))
    if not _drop_handlers(base, logging.handlers.TimedRotatingFileHandler, keep=app_log):
        rotating = logging.handlers.TimedRotatingFileHandler(
            app_log, when="midnight", backupCount=14, encoding="utf-8", utc=True
        )
        rotating.setLevel(_level(file_level, logging.DEBUG))
        rotating.setFormatter(formatter)
        rotating.addFilter(mask)
        base.addHandler(rotating)


def build_logger(
    *,
    name: str = "ftsync",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter.

    - `<name>` holds the console and rotating file handlers.
    - `<name>.<action>.<run_id>` holds the per-run file and propagates to `<name>`.
    - The adapter injects run_id/action/resource into every record.
    """
    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    _configure_base(base, base_dir=base_dir, console_level=console_level, file_level=file_level)

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True

    if not getattr(child, "_ftsync_configured", False):
        dated_dir = Path(base_dir) / datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(dated_dir / f"{action}_{run_id}.log", encoding="utf-8")
        fh.setLevel(_level(file_level, logging.DEBUG))
        fh.setFormatter(_utc_formatter())
        fh.addFilter(MaskSecretsFilter())
        child.addHandler(fh)
        child._ftsync_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(
        child,
        {"run_id": run_id, "action": action, "resource": (extra or {}).get("resource", "-")},
    )
    adapter.debug("Logger initialised")
    return adapter


def get_logger(name: str, **context: Any) -> logging.LoggerAdapter:
    """
    Adapter for library modules used without `build_logger` (tests, embedding).

    Records carry the same context keys so the shared format never fails.
    """
    defaults = {"run_id": "-", "action": "-", "resource": "-"}
    defaults.update(context)
    return logging.LoggerAdapter(logging.getLogger(name), defaults)
