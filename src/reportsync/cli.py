"""
Command-line interface for ReportSync.

Usage (examples):
  - Show the desired state for this node (no changes):
      reportsync plan --facts ./facts.yml --inventory-url https://inventory.example:8081

  - Dry-run apply (in-memory substrate):
      reportsync apply --facts ./facts.yml --source 10.0.0.5 --host report01.example --dry-run

  - Real apply (exports file, psql, pg_ident.conf / pg_hba.conf):
      reportsync apply --facts ./facts.yml --inventory-url https://inventory.example:8081
"""

from __future__ import annotations

import argparse
import shlex
import sys
from typing import Any, Dict, Iterable, List, Optional

from .core.applier import PlanApplier
from .core.config import AppConfig, ConfigError, load_config
from .core.controller import METRICS_PROFILE, ReconcileResult, reconcile
from .core.facts import FactsError, NodeFacts, load_facts
from .core.inventory import InventoryClient, InventoryError, InventoryQuery
from .core.logging_setup import build_logger
from .core.plan import PlanError
from .core.substrate import LocalSubstrate, RecordingSubstrate, Substrate, SubstrateError

EXIT_OK = 0
EXIT_APPLY_ERROR = 2
EXIT_CONFIG_ERROR = 3


def _summarize_counts(counts: Dict[str, int]) -> str:
    keys = ["APPLIED", "UNCHANGED", "SKIP", "ERROR"]
    return " | ".join(f"{k}={counts.get(k, 0)}" for k in keys)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="reportsync", description="Reporting node access reconciliation")
    sub = p.add_subparsers(dest="cmd", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML configuration file")
    common.add_argument("--facts", default=None, help="Node facts file (.yml or .json)")
    common.add_argument("--host", default=None, help="Explicit reporting host (skips inventory lookup)")
    common.add_argument("--source", action="append", default=None, help="Source address allowed to mount exports (repeatable)")
    common.add_argument("--disable-exports", action="store_true", help="Retract the exports instead of declaring them")

    # Inventory
    common.add_argument("--inventory-url", default=None, help="Inventory service base URL")
    common.add_argument("--token", default=None, help="Inventory API token")
    common.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")

    # Logging
    common.add_argument("--logs-dir", default=None, help="Logs base directory")
    common.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    common.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")

    pl = sub.add_parser("plan", parents=[common], help="Print the desired state for this node")
    pl.add_argument("--format", default="yaml", choices=["yaml", "json"], help="Output format")

    a = sub.add_parser("apply", parents=[common], help="Converge this node to the desired state")
    a.add_argument("--dry-run", action="store_true", help="Apply against an in-memory substrate")

    return p


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Dict[str, Any]] = {
        "app": {},
        "reporting": {},
        "exports": {},
        "inventory": {},
        "facts": {},
        "logging": {},
    }

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            out[section][key] = value

    put("app", "dry_run", True if getattr(args, "dry_run", False) else None)
    put("reporting", "host", args.host)
    put("reporting", "source_addresses", args.source)
    put("exports", "enabled", False if args.disable_exports else None)
    put("inventory", "base_url", args.inventory_url)
    put("inventory", "token", args.token)
    put("inventory", "verify_tls", args.verify_tls)
    put("facts", "path", args.facts)
    put("logging", "base_dir", args.logs_dir)
    put("logging", "console_level", args.console_level)
    put("logging", "file_level", args.file_level)
    return {k: v for k, v in out.items() if v}


def _inventory(cfg: AppConfig, logger) -> Any:
    inv = cfg.inventory
    if not inv.base_url:
        def _unconfigured(query: InventoryQuery) -> List[str]:
            raise InventoryError(status=0, url="", message="inventory.base_url is not configured")
        return _unconfigured

    cert: Optional[Any] = None
    if inv.cert:
        cert = (inv.cert, inv.key) if inv.key else inv.cert
    verify: Any = inv.ca if (inv.verify_tls and inv.ca) else bool(inv.verify_tls)
    return InventoryClient(
        inv.base_url,
        token=inv.token,
        cert=cert,
        verify=verify,
        timeout_sec=inv.timeout_sec,
        retries=inv.retries,
        logger=logger,
    )


def _reconcile(cfg: AppConfig, facts: NodeFacts, logger) -> ReconcileResult:
    query_fn = _inventory(cfg, logger)

    sources = cfg.reporting.source_addresses
    if not sources:
        if not isinstance(query_fn, InventoryClient):
            raise InventoryError(status=0, url="", message="no source addresses and no inventory configured")
        sources = query_fn.importer_nodes(cfg.reporting.importer_class)
        logger.info("Loaded %d source address(es) from inventory", len(sources))

    return reconcile(cfg, facts, query_fn, source_addresses=sources, logger=logger)


def _substrate(cfg: AppConfig, logger) -> Substrate:
    if cfg.app.dry_run:
        return RecordingSubstrate()
    include_commands = {}
    if cfg.metrics.install_command:
        include_commands[METRICS_PROFILE] = shlex.split(cfg.metrics.install_command)
    return LocalSubstrate(
        cfg.database,
        exports_file=cfg.exports.exports_file,
        exportfs_cmd=shlex.split(cfg.exports.reload_command) if cfg.exports.reload_command else None,
        include_commands=include_commands,
        logger=logger,
    )


def _run(args: argparse.Namespace) -> int:
    kwargs: Dict[str, Any] = {"files": (args.config,)} if args.config else {}
    try:
        cfg = load_config(_overrides(args), **kwargs)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        facts = load_facts(cfg.facts.path)
    except FactsError as e:
        print(f"Facts error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"node": facts.fqdn},
    )
    logger.info("Starting reportsync %s (dry_run=%s)", args.cmd, cfg.app.dry_run)

    try:
        result = _reconcile(cfg, facts, logger)
    except (InventoryError, PlanError) as e:
        logger.error("Reconciliation failed: %s", e)
        return EXIT_CONFIG_ERROR

    if args.cmd == "plan":
        print(result.plan.to_json() if args.format == "json" else result.plan.to_yaml())
        return EXIT_OK

    applier = PlanApplier(_substrate(cfg, logger), logger=logger)
    try:
        _, counts = applier.apply(result.plan)
    except SubstrateError as e:
        logger.error("Apply aborted: %s", e)
        print(_summarize_counts(applier.counts))
        return EXIT_APPLY_ERROR

    logger.info("Apply summary: %s", _summarize_counts(counts))
    print(_summarize_counts(counts))
    return EXIT_OK


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.cmd in ("plan", "apply"):
        return _run(args)
    parser.error("Unknown command")  # pragma: no cover
    return 2  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
