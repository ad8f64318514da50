"""
Convergence controller: one reconciliation pass for one node.

    exports   (always)
    metrics   (core platform nodes)
    grants    (database hosts with a known server version)

Inputs are explicit: facts, configuration and the inventory query callable.
The returned plan is a pure description; nothing is applied here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .clients import build_client_spec
from .config import AppConfig
from .exports import reconcile_exports
from .facts import NodeFacts
from .grants import GrantOutcome, orchestrate_grants
from .plan import IncludeDeclaration, Plan
from .resolver import QueryFunc

__all__ = ["METRICS_PROFILE", "ReconcileResult", "reconcile"]

METRICS_PROFILE = "reportsync::metrics_dashboard"


@dataclass
class ReconcileResult:
    plan: Plan
    warnings: List[str] = field(default_factory=list)
    grants: Optional[GrantOutcome] = None


def reconcile(
    cfg: AppConfig,
    facts: NodeFacts,
    query_fn: QueryFunc,
    *,
    source_addresses: Optional[Sequence[str]] = None,
    plan: Optional[Plan] = None,
    logger: Optional[logging.LoggerAdapter] = None,
) -> ReconcileResult:
    """
    Compute the desired state for ``facts.fqdn``.

    ``source_addresses`` defaults to ``cfg.reporting.source_addresses``.
    Passing an existing ``plan`` re-declares into it; identical declarations
    are absorbed, so repeated passes converge to the same plan.
    """
    lg = logger or logging.getLogger("rs.controller")
    result = ReconcileResult(plan=plan if plan is not None else Plan())

    addresses = list(source_addresses if source_addresses is not None else cfg.reporting.source_addresses)
    client_spec = build_client_spec(addresses)
    reconcile_exports(
        result.plan,
        enabled=cfg.exports.enabled,
        client_spec=client_spec,
        fqdn=facts.fqdn,
        mount_root=cfg.reporting.mount_root,
    )
    lg.debug("Exports declared (enabled=%s, clients=%d)", cfg.exports.enabled, len(addresses))

    if facts.is_core_platform:
        version = str((facts.platform or {}).get("server_version") or "")
        result.plan.declare(IncludeDeclaration(name=METRICS_PROFILE, params=(("platform_version", version),)))
        lg.debug("Metrics dashboard declared")

    if facts.is_database_host and facts.database_version:
        outcome = orchestrate_grants(
            result.plan,
            facts,
            settings=cfg.database,
            explicit_host=cfg.reporting.host or None,
            query_fn=query_fn,
            importer_class=cfg.reporting.importer_class,
            logger=logger,
        )
        result.grants = outcome
        if outcome.warning:
            result.warnings.append(outcome.warning)
    else:
        lg.debug("Not a database host (or version unknown); grants skipped")

    lg.info("Reconciled %s: %d resource(s), %d warning(s)", facts.fqdn, len(result.plan), len(result.warnings))
    return result
