"""
Reporting host resolution.

Explicit configuration always wins. Without it the inventory is asked for
active nodes carrying the importer role class and the smallest certname is
chosen. An empty answer means "unresolved"; a failing query is not caught
here and reaches the caller as is.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .inventory import InventoryQuery

__all__ = ["IMPORTER_CLASS", "QueryFunc", "importer_query", "resolve_reporting_host"]

IMPORTER_CLASS = "Reportsync::Importer"

QueryFunc = Callable[[InventoryQuery], List[str]]

log = logging.getLogger("rs.resolver")


def importer_query(title: str = IMPORTER_CLASS, *, limit: Optional[int] = 1) -> InventoryQuery:
    """Predicate for active nodes declaring the importer role class."""
    return InventoryQuery(
        resource_type="Class",
        title=title,
        active_only=True,
        order_by="certname",
        limit=limit,
    )


def resolve_reporting_host(
    explicit: Optional[str],
    query_fn: QueryFunc,
    *,
    importer_class: str = IMPORTER_CLASS,
) -> Optional[str]:
    if explicit:
        log.debug("Reporting host taken from configuration: %s", explicit)
        return explicit

    candidates = query_fn(importer_query(importer_class, limit=1))
    if not candidates:
        log.debug("No active node declares %s", importer_class)
        return None

    # Collaborators are asked for ascending order, but the choice must not depend on it.
    host = sorted(candidates)[0]
    log.debug("Reporting host resolved from inventory: %s (candidates=%d)", host, len(candidates))
    return host
