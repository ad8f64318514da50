"""
Apply substrates: where declarations become real.

Every handler returns a status string:
  APPLIED    the system was changed
  UNCHANGED  the system already matched (existence check / guard hit)
  SKIP       nothing to do locally (delegated or not configured)

Failures raise ``SubstrateError`` and are never turned into a status.

- ``RecordingSubstrate``: in-memory state for dry runs and tests.
- ``LocalSubstrate``: exports file, ``psql`` and ``pg_ident.conf`` /
  ``pg_hba.conf`` on the local host.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .config import DatabaseSection
from .plan import (
    AllowListDeclaration,
    ExportDeclaration,
    GrantDeclaration,
    GuardedCommandDeclaration,
    IncludeDeclaration,
    RoleDeclaration,
)

__all__ = [
    "APPLIED",
    "UNCHANGED",
    "SKIP",
    "SubstrateError",
    "Substrate",
    "RecordingSubstrate",
    "LocalSubstrate",
    "IDENT_MAP_NAME",
]

APPLIED = "APPLIED"
UNCHANGED = "UNCHANGED"
SKIP = "SKIP"

IDENT_MAP_NAME = "reportsync-map"
MANAGED_HEADER = "# Managed by reportsync. Local edits to these lines are overwritten."

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class SubstrateError(RuntimeError):
    """Raised when a collaborator fails to apply a declaration."""


class Substrate:
    """Interface implemented by every substrate."""

    def declare_export(self, decl: ExportDeclaration) -> str:
        raise NotImplementedError

    def include(self, decl: IncludeDeclaration) -> str:
        raise NotImplementedError

    def create_role(self, decl: RoleDeclaration) -> str:
        raise NotImplementedError

    def grant_privilege(self, decl: GrantDeclaration) -> str:
        raise NotImplementedError

    def run_guarded_command(self, decl: GuardedCommandDeclaration) -> str:
        raise NotImplementedError

    def declare_allow_list_entry(self, decl: AllowListDeclaration) -> str:
        raise NotImplementedError

    def finish(self) -> None:
        """Called once after the last declaration of an apply."""


# =========================
# In-memory
# =========================

class RecordingSubstrate(Substrate):
    """Converging in-memory stand-in; ``calls`` records every invocation."""

    def __init__(self) -> None:
        self.exports: Dict[str, ExportDeclaration] = {}
        self.includes: Set[str] = set()
        self.roles: Set[str] = set()
        self.grants: Set[Tuple[str, str, str]] = set()
        self.commands_run: Set[Tuple[str, str]] = set()
        self.allow_list: Dict[Tuple[str, str], str] = {}   # (user, database) -> certname
        self.calls: List[Tuple[str, str]] = []

    def declare_export(self, decl: ExportDeclaration) -> str:
        self.calls.append(("declare_export", decl.ref))
        current = self.exports.get(decl.path)
        if decl.ensure == "absent":
            if current is None:
                return UNCHANGED
            del self.exports[decl.path]
            return APPLIED
        if current == decl:
            return UNCHANGED
        self.exports[decl.path] = decl
        return APPLIED

    def include(self, decl: IncludeDeclaration) -> str:
        self.calls.append(("include", decl.ref))
        if decl.name in self.includes:
            return UNCHANGED
        self.includes.add(decl.name)
        return APPLIED

    def create_role(self, decl: RoleDeclaration) -> str:
        self.calls.append(("create_role", decl.ref))
        if decl.name in self.roles:
            return UNCHANGED
        self.roles.add(decl.name)
        return APPLIED

    def grant_privilege(self, decl: GrantDeclaration) -> str:
        self.calls.append(("grant_privilege", decl.ref))
        if decl.role not in self.roles:
            raise SubstrateError(f"role {decl.role!r} does not exist")
        key = (decl.privilege, decl.database, decl.role)
        if key in self.grants:
            return UNCHANGED
        self.grants.add(key)
        return APPLIED

    def run_guarded_command(self, decl: GuardedCommandDeclaration) -> str:
        self.calls.append(("run_guarded_command", decl.ref))
        key = (decl.database, decl.command)
        if key in self.commands_run:
            return UNCHANGED
        self.commands_run.add(key)
        return APPLIED

    def declare_allow_list_entry(self, decl: AllowListDeclaration) -> str:
        self.calls.append(("declare_allow_list_entry", decl.ref))
        key = (decl.user, decl.database)
        if self.allow_list.get(key) == decl.allowed_client_certname:
            return UNCHANGED
        self.allow_list[key] = decl.allowed_client_certname
        return APPLIED


# =========================
# Local host
# =========================

def _read_lines(path: Path) -> List[str]:
    if not path.exists():
        return []
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise SubstrateError(f"Cannot read {path}: {e}") from e


def _write_lines(path: Path, lines: Sequence[str]) -> None:
    tmp = path.with_name(path.name + ".reportsync.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        raise SubstrateError(f"Cannot write {path}: {e}") from e


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class LocalSubstrate(Substrate):
    """
    Apply declarations on this host.

    ``runner`` defaults to ``subprocess.run`` and is injectable for tests.
    ``include_commands`` maps profile names to the argv that installs them;
    profiles without a command are reported as SKIP.
    """

    def __init__(
        self,
        database: DatabaseSection,
        *,
        exports_file: str = "/etc/exports.d/reportsync.exports",
        exportfs_cmd: Optional[Sequence[str]] = ("exportfs", "-ra"),
        include_commands: Optional[Mapping[str, Sequence[str]]] = None,
        runner: Optional[Runner] = None,
        timeout_sec: float = 120,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.database = database
        self.exports_file = Path(exports_file)
        self.exportfs_cmd = list(exportfs_cmd) if exportfs_cmd else None
        self.include_commands = {k: list(v) for k, v in (include_commands or {}).items() if v}
        self.runner: Runner = runner or subprocess.run
        self.timeout = float(timeout_sec)
        self.log = logger or logging.getLogger("rs.substrate")
        self._exports_changed = False

    # ------------- process helpers -------------

    def _run(self, argv: Sequence[str], *, user: Optional[str] = None, group: Optional[str] = None) -> "subprocess.CompletedProcess[str]":
        kwargs: Dict[str, Any] = {"capture_output": True, "text": True, "timeout": self.timeout, "check": False}
        # user/group switch requires root
        if user and hasattr(os, "geteuid") and os.geteuid() == 0:
            kwargs["user"] = user
            kwargs["group"] = group or user
        try:
            proc = self.runner(list(argv), **kwargs)
        except (OSError, subprocess.SubprocessError) as e:
            raise SubstrateError(f"Cannot run {argv[0]}: {e}") from e
        if proc.returncode != 0:
            raise SubstrateError(f"{argv[0]} exited with {proc.returncode}: {(proc.stderr or '').strip()[:500]}")
        return proc

    def _psql(
        self,
        database: str,
        sql: str,
        *,
        psql_path: Optional[str] = None,
        user: Optional[str] = None,
        group: Optional[str] = None,
    ) -> List[str]:
        argv = [
            psql_path or self.database.psql_path,
            "--no-psqlrc",
            "--tuples-only",
            "--no-align",
            "--quiet",
            "--set",
            "ON_ERROR_STOP=1",
            "--dbname",
            database,
            "--command",
            sql,
        ]
        proc = self._run(
            argv,
            user=user or self.database.superuser,
            group=group or self.database.group or self.database.superuser,
        )
        self.log.debug("psql db=%s: %s", database, sql)
        return [line for line in (proc.stdout or "").splitlines() if line.strip()]

    # ------------- exports -------------

    def declare_export(self, decl: ExportDeclaration) -> str:
        lines = _read_lines(self.exports_file)
        body = [ln for ln in lines if ln != MANAGED_HEADER]
        wanted = f"{decl.path}{decl.clients}"
        kept = [ln for ln in body if ln.split(" ", 1)[0] != decl.path]
        current = [ln for ln in body if ln.split(" ", 1)[0] == decl.path]

        if decl.ensure == "absent":
            if not current:
                return UNCHANGED
            new = kept
        else:
            if current == [wanted]:
                return UNCHANGED
            new = kept + [wanted]

        _write_lines(self.exports_file, [MANAGED_HEADER] + new)
        self.log.info("Export %s -> %s (%s)", decl.path, decl.ensure, self.exports_file)
        self._exports_changed = True
        return APPLIED

    def finish(self) -> None:
        if not self._exports_changed:
            return
        self._exports_changed = False
        if self.exportfs_cmd:
            self._run(self.exportfs_cmd)

    # ------------- includes -------------

    def include(self, decl: IncludeDeclaration) -> str:
        argv = self.include_commands.get(decl.name)
        if not argv:
            self.log.info("Profile %s has no local installer; delegated", decl.name)
            return SKIP
        self._run(argv)
        return APPLIED

    # ------------- database -------------

    def create_role(self, decl: RoleDeclaration) -> str:
        exists = self._psql("postgres", f"SELECT 1 FROM pg_roles WHERE rolname = {_literal(decl.name)}")
        if exists:
            return UNCHANGED
        self._psql("postgres", f"CREATE ROLE {_ident(decl.name)} LOGIN")
        return APPLIED

    def grant_privilege(self, decl: GrantDeclaration) -> str:
        check = (
            "SELECT 1 FROM pg_database d CROSS JOIN LATERAL aclexplode(d.datacl) a "
            "JOIN pg_roles r ON r.oid = a.grantee "
            f"WHERE d.datname = {_literal(decl.database)} AND r.rolname = {_literal(decl.role)} "
            f"AND a.privilege_type = {_literal(decl.privilege.upper())}"
        )
        if self._psql("postgres", check):
            return UNCHANGED
        self._psql(
            "postgres",
            f"GRANT {decl.privilege.upper()} ON DATABASE {_ident(decl.database)} TO {_ident(decl.role)}",
        )
        return APPLIED

    def run_guarded_command(self, decl: GuardedCommandDeclaration) -> str:
        opts = {"psql_path": decl.psql_path, "user": decl.psql_user, "group": decl.psql_group}
        if decl.unless and self._psql(decl.database, decl.unless, **opts):
            return UNCHANGED
        self._psql(decl.database, decl.command, **opts)
        return APPLIED

    def declare_allow_list_entry(self, decl: AllowListDeclaration) -> str:
        ident_path = Path(decl.ident_conf_path)
        hba_path = ident_path.with_name("pg_hba.conf")

        ident_line = f"{IDENT_MAP_NAME} {decl.allowed_client_certname} {decl.user}"
        hba_lines = [
            f"hostssl {decl.database} {decl.user} {mask} cert map={IDENT_MAP_NAME}"
            for mask in (decl.ip_mask_allow_all_users_ssl, decl.ipv6_mask_allow_all_users_ssl)
        ]

        def owns_ident(line: str) -> bool:
            parts = line.split()
            return len(parts) == 3 and parts[0] == IDENT_MAP_NAME and parts[2] == decl.user

        def owns_hba(line: str) -> bool:
            parts = line.split()
            return (
                len(parts) >= 5
                and parts[:3] == ["hostssl", decl.database, decl.user]
                and parts[-1] == f"map={IDENT_MAP_NAME}"
            )

        changed = self._converge_lines(ident_path, owns_ident, [ident_line])
        changed = self._converge_lines(hba_path, owns_hba, hba_lines) or changed
        if not changed:
            return UNCHANGED
        self._psql("postgres", "SELECT pg_reload_conf()")
        self.log.info("Allow-list %s: %s -> %s", decl.database, decl.allowed_client_certname, decl.user)
        return APPLIED

    @staticmethod
    def _converge_lines(path: Path, owned: Callable[[str], bool], wanted: Sequence[str]) -> bool:
        """
        Make the lines selected by ``owned`` equal to ``wanted``.

        Owned lines not in ``wanted`` (a previous reporting host, an old mask)
        are dropped; other lines are left untouched and keep their order.
        """
        lines = _read_lines(path)
        seen: Set[str] = set()
        new: List[str] = []
        for ln in lines:
            if owned(ln):
                if ln not in wanted or ln in seen:
                    continue
                seen.add(ln)
            new.append(ln)
        new.extend(ln for ln in wanted if ln not in seen)
        if new == lines:
            return False
        _write_lines(path, new)
        return True
