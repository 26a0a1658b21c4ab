"""
Command-line interface for FivetranSync.

Usage (examples):
  - Show what apply would change (reads only):
      ftsync plan --file ./fivetran.yml --state ./ftsync-state.json

  - Apply:
      ftsync apply --file ./fivetran.yml --state ./ftsync-state.json

  - Data source lookup:
      ftsync read group_connectors --id grp_1

  - Delete tracked resources:
      ftsync destroy --file ./fivetran.yml --state ./ftsync-state.json
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .core.applier import Applier, ApplyResult, load_document
from .core.config import AppConfig, load_config
from .core.datasources import DATA_SOURCES, LIST_SOURCES, DataSources
from .core.errors import FivetranSyncError
from .core.fivetran_client import FivetranClient
from .core.logging_setup import build_logger
from .core.profiles import ProfileLoader

_SUMMARY_KEYS = {
    "plan": ["CREATE", "UPDATE", "REPLACE", "UNCHANGED", "ERROR", "EXCEPTION"],
    "apply": ["CREATED", "UPDATED", "UNCHANGED", "ERROR", "EXCEPTION"],
    "destroy": ["DELETED", "ABSENT", "SKIP", "ERROR", "EXCEPTION"],
}


def _summarize_counts(cmd: str, counts: Dict[str, int]) -> str:
    # stable order for readability
    parts = [f"{k}={counts.get(k, 0)}" for k in _SUMMARY_KEYS[cmd]]
    return " | ".join(parts)


def _exit_code_from_counts(counts: Dict[str, int]) -> int:
    if counts.get("ERROR", 0) or counts.get("EXCEPTION", 0):
        return 2
    return 0


def _read_state(path: Optional[str]) -> Dict[str, str]:
    if not path or not Path(path).exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f) or {}
    return {str(k): str(v) for k, v in (data.get("resources") or {}).items()}


def _write_state(path: Optional[str], state: Dict[str, str]) -> None:
    if not path:
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"version": 1, "resources": dict(sorted(state.items()))}, f, indent=2)
        f.write("\n")


def _write_output(path: Optional[str], payload: Any) -> None:
    if not path:
        return
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)
        f.write("\n")


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="", help="YAML config file (default: ./ftsync.yml, ~/.config/ftsync/config.yml)")
    p.add_argument("--search-path", action="append", default=[], help="Extra profiles directory (repeatable)")
    p.add_argument("--output", default="", help="Write results as JSON to this file")

    # Fivetran / HTTP
    p.add_argument("--base-url", default="", help="Fivetran API base URL")
    p.add_argument("--api-key", default="", help="Fivetran API key")
    p.add_argument("--api-secret", default="", help="Fivetran API secret")
    p.add_argument("--verify-tls", default="", choices=["", "true", "false"], help="Verify TLS (https)")
    p.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")
    p.add_argument("--retries", type=int, default=None, help="HTTP retries (5xx/network)")

    # Logging
    p.add_argument("--logs-dir", default="", help="Logs base directory")
    p.add_argument("--console-level", default="", help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default="", help="File log level (DEBUG..CRITICAL)")


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ftsync", description="Reconcile Fivetran resources from a YAML document")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("plan", "Diff the document against Fivetran without writing"),
        ("apply", "Create/update the document's resources"),
        ("destroy", "Delete the document's tracked resources"),
    ):
        a = sub.add_parser(name, help=help_text)
        a.add_argument("--file", required=True, help="Desired-state document (YAML)")
        a.add_argument("--state", default="", help="JSON file tracking created identifiers")
        if name == "apply":
            a.add_argument("--dry-run", action="store_true", help="Same as plan")
        _add_common(a)

    r = sub.add_parser("read", help="Run a read-only data source")
    r.add_argument("source", choices=DATA_SOURCES, help="Data source name")
    r.add_argument("--id", default="", help="Object id (user, group, destination, connector, ...)")
    r.add_argument("--schema", default="", help="group_connectors: filter by destination schema name")
    _add_common(r)

    return p


def _overrides(args: argparse.Namespace, dry_run: bool) -> Dict[str, Any]:
    fivetran: Dict[str, Any] = {
        "base_url": args.base_url,
        "api_key": args.api_key,
        "api_secret": args.api_secret,
        "verify_tls": args.verify_tls,
        "timeout_sec": args.timeout_sec,
        "retries": args.retries,
    }
    logging_cfg = {
        "base_dir": args.logs_dir,
        "console_level": args.console_level,
        "file_level": args.file_level,
    }
    out: Dict[str, Any] = {
        "app": {"dry_run": dry_run},
        "fivetran": {k: v for k, v in fivetran.items() if v not in ("", None)},
        "logging": {k: v for k, v in logging_cfg.items() if v},
    }
    if args.search_path:
        out["reconcile"] = {"search_paths": list(args.search_path)}
    return out


def _client(cfg: AppConfig, logger) -> FivetranClient:
    return FivetranClient(
        cfg.fivetran.api_key,
        cfg.fivetran.api_secret,
        base_url=cfg.fivetran.base_url,
        verify_tls=bool(cfg.fivetran.verify_tls),
        timeout_sec=int(cfg.fivetran.timeout_sec),
        retries=int(cfg.fivetran.retries),
        page_limit=int(cfg.fivetran.page_limit),
        logger=logger,
    )


def _results_payload(results: List[ApplyResult], counts: Dict[str, int]) -> Dict[str, Any]:
    return {"results": [dataclasses.asdict(r) for r in results], "counts": counts}


def _run(args: argparse.Namespace) -> int:
    cmd = "plan" if args.cmd == "apply" and args.dry_run else args.cmd
    overrides = _overrides(args, dry_run=(cmd == "plan"))
    cfg = load_config(overrides, files=(args.config,)) if args.config else load_config(overrides)

    logger = build_logger(
        run_id=cfg.run_id,
        action=cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )
    logger.info("Starting ftsync %s", cmd)

    client = _client(cfg, logger)
    loader = ProfileLoader(search_paths=cfg.reconcile.search_paths)

    if cmd == "read":
        if args.source not in LIST_SOURCES and not args.id:
            logger.error("Data source %s needs --id", args.source)
            return 2
        lookup = DataSources(client, loader, logger=logger).lookup(args.source)
        kwargs: Dict[str, Any] = {}
        if args.id:
            kwargs["id"] = args.id
        if args.schema and args.source == "group_connectors":
            kwargs["schema"] = args.schema
        try:
            data = lookup(**kwargs)
        except FivetranSyncError as e:
            logger.error("Data source %s failed: %s", args.source, e)
            return 2
        _write_output(args.output, data)
        print(json.dumps(data, indent=2, default=str))
        return 0

    decls = load_document(args.file)
    state = _read_state(args.state)
    logger.info("Loaded %s resource(s) from %s", len(decls), args.file)
    applier = Applier(
        client,
        loader,
        options={
            "patch_batch_size": cfg.reconcile.patch_batch_size,
            "rate_limit_backoff_sec": cfg.reconcile.rate_limit_backoff_sec,
        },
        logger=logger,
    )

    if cmd == "plan":
        results, counts = applier.plan(decls, state)
    elif cmd == "apply":
        results, counts, state = applier.apply(decls, state)
        _write_state(args.state, state)
    else:
        results, counts, state = applier.destroy(decls, state)
        _write_state(args.state, state)

    for r in results:
        line = f"{r.status:<9} {r.key}" + (f" id={r.identifier}" if r.identifier else "")
        if r.changes:
            line += f" changes={','.join(r.changes)}"
        if r.error:
            line += f" error={r.error}"
        print(line)

    summary = _summarize_counts(cmd, counts)
    logger.info("%s summary: %s", cmd.capitalize(), summary)
    _write_output(args.output, _results_payload(results, counts))
    print(summary)
    return _exit_code_from_counts(counts)


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    return _run(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
