"""Read-only exports of the source trees towards the reporting node."""

from __future__ import annotations

from typing import List, Tuple

from .plan import ExportDeclaration, Plan

__all__ = ["SOURCE_TREES", "NFS_OPTIONS", "EXPORT_TAG", "DEFAULT_MOUNT_ROOT", "reconcile_exports"]

# operational logs, installed software tree, configuration tree
SOURCE_TREES: Tuple[str, ...] = ("/var/log", "/opt/fleet", "/etc/fleet")

NFS_OPTIONS = "tcp,nolock,rsize=32768,wsize=32768,soft,noatime,actimeo=3,retrans=1"
EXPORT_TAG = "reportsync"
DEFAULT_MOUNT_ROOT = "/srv/reportsync"


def mount_path(mount_root: str, fqdn: str, source: str) -> str:
    return f"{mount_root.rstrip('/')}/{fqdn}{source}"


def reconcile_exports(
    plan: Plan,
    *,
    enabled: bool,
    client_spec: str,
    fqdn: str,
    mount_root: str = DEFAULT_MOUNT_ROOT,
) -> List[ExportDeclaration]:
    """Declare one export per source tree; ``enabled=False`` retracts them all."""
    ensure = "mounted" if enabled else "absent"
    declared: List[ExportDeclaration] = []
    for source in SOURCE_TREES:
        decl = ExportDeclaration(
            path=source,
            ensure=ensure,
            clients=client_spec,
            mount=mount_path(mount_root, fqdn, source),
            options_nfs=NFS_OPTIONS,
            nfstag=EXPORT_TAG,
        )
        declared.append(plan.declare(decl))  # type: ignore[arg-type]
    return declared
