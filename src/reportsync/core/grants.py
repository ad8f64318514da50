"""
Database grants for the reporting node.

Lifecycle on a database host:
  baseline profile -> resolve reporting host -> (unresolved: warn, stop)
  -> role -> per database: CONNECT, guarded SELECT, certificate allow-list

Dependencies:
  Role[<role>] <- Grant[CONNECT on <db> ...]
  Role[<role>] <- GuardedCommand[grant select ...]
  Role[<role>] <- AllowListEntry[<role>-<db>]

CONNECT and SELECT of one database are independent of each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import DatabaseSection
from .facts import NodeFacts
from .plan import (
    AllowListDeclaration,
    GrantDeclaration,
    GuardedCommandDeclaration,
    IncludeDeclaration,
    Plan,
    RoleDeclaration,
)
from .resolver import IMPORTER_CLASS, QueryFunc, resolve_reporting_host

__all__ = [
    "DATABASES",
    "DEFAULT_PG_VERSION",
    "IPV4_ALLOW_ALL",
    "IPV6_ALLOW_ALL",
    "BASELINE_PROFILE",
    "UNRESOLVED_HOST_WARNING",
    "GrantOutcome",
    "orchestrate_grants",
    "pg_version",
    "ident_conf_path",
    "select_grant_sql",
]

# activity, classifier, inventory, catalog store, role-based access control, orchestrator
DATABASES: Tuple[str, ...] = ("activity", "classifier", "inventory", "catalog", "rbac", "orchestrator")

DEFAULT_PG_VERSION = "9.4"
IPV4_ALLOW_ALL = "0.0.0.0/0"
IPV6_ALLOW_ALL = "::/0"
BASELINE_PROFILE = "reportsync::database_baseline"

UNRESOLVED_HOST_WARNING = (
    "Reporting host is unknown: set 'reporting.host' or classify an agent node "
    "with the {importer_class} role; database grants were not declared"
)

log = logging.getLogger("rs.grants")


@dataclass(frozen=True)
class GrantOutcome:
    host: Optional[str]
    pg_version: Optional[str] = None
    warning: Optional[str] = None


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def pg_version(facts: NodeFacts) -> str:
    return facts.database_version or DEFAULT_PG_VERSION


def ident_conf_path(data_root: str, version: str) -> str:
    return f"{data_root.rstrip('/')}/{version}/data/pg_ident.conf"


def select_grant_sql(role: str) -> Tuple[str, str]:
    """Return ``(command, unless)`` for the guarded SELECT grant."""
    command = f"GRANT SELECT ON ALL TABLES IN SCHEMA public TO {_quote_ident(role)}"
    unless = (
        "SELECT 1 FROM information_schema.role_table_grants "
        f"WHERE grantee = {_quote_literal(role)} "
        "AND table_schema = 'public' AND privilege_type = 'SELECT'"
    )
    return command, unless


def orchestrate_grants(
    plan: Plan,
    facts: NodeFacts,
    *,
    settings: DatabaseSection,
    explicit_host: Optional[str],
    query_fn: QueryFunc,
    importer_class: str = IMPORTER_CLASS,
    logger: Optional[logging.LoggerAdapter] = None,
) -> GrantOutcome:
    """
    Declare the grant chain for the reporting host.

    Inventory failures propagate; an empty inventory answer yields a warning
    and an outcome with ``host=None``.
    """
    lg = logger or log
    role = settings.read_role

    plan.declare(
        IncludeDeclaration(
            name=BASELINE_PROFILE,
            params=(("role", role), ("policy", "read_only")),
        )
    )

    host = resolve_reporting_host(explicit_host, query_fn, importer_class=importer_class)
    if not host:
        message = UNRESOLVED_HOST_WARNING.format(importer_class=importer_class)
        lg.warning(message)
        return GrantOutcome(host=None, warning=message)

    version = pg_version(facts)
    ident_path = ident_conf_path(settings.data_root, version)
    superuser = settings.superuser
    group = settings.group or superuser

    role_ref = plan.declare(RoleDeclaration(name=role)).ref
    command, unless = select_grant_sql(role)

    declared: List[str] = []
    for database in DATABASES:
        connect = GrantDeclaration(privilege="CONNECT", database=database, role=role, require=(role_ref,))
        select = GuardedCommandDeclaration(
            name=f"grant select on all tables in {database} to {role}",
            command=command,
            database=database,
            db_user=superuser,
            psql_user=superuser,
            psql_group=group,
            psql_path=settings.psql_path,
            unless=unless,
            require=(role_ref,),
        )
        allow = AllowListDeclaration(
            name=f"{role}-{database}",
            user=role,
            database=database,
            allowed_client_certname=host,
            ident_conf_path=ident_path,
            ip_mask_allow_all_users_ssl=IPV4_ALLOW_ALL,
            ipv6_mask_allow_all_users_ssl=IPV6_ALLOW_ALL,
            require=(role_ref,),
        )
        for decl in (connect, select, allow):
            declared.append(plan.declare(decl).ref)

    lg.info("Declared %d grant step(s) for %s on %d database(s) (pg %s)", len(declared), host, len(DATABASES), version)
    return GrantOutcome(host=host, pg_version=version)
