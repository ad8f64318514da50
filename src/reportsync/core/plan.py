"""
Desired-state plan for one reconciliation run.

A run never touches the system directly: every component *declares* what
should exist, and the plan keeps those declarations keyed by reference
(``Kind[title]``).

- Re-declaring an identical resource is a no-op (idempotent).
- Declaring a different resource under an existing reference is a conflict.
- ``ordered()`` returns declarations in dependency order, declaration order
  breaking ties, so the apply step never depends on emission order.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple

import yaml

__all__ = [
    "PlanError",
    "DuplicateDeclarationError",
    "Declaration",
    "ExportDeclaration",
    "IncludeDeclaration",
    "RoleDeclaration",
    "GrantDeclaration",
    "GuardedCommandDeclaration",
    "AllowListDeclaration",
    "Plan",
    "ref",
]


class PlanError(Exception):
    """Raised when the declared graph cannot be ordered."""


class DuplicateDeclarationError(PlanError):
    """Raised when two different declarations share one reference."""


def ref(kind: str, title: str) -> str:
    """Build the canonical reference string of a declaration."""
    return f"{kind}[{title}]"


# ---------- Declarations ----------

@dataclass(frozen=True)
class Declaration:
    """Base class. Subclasses set ``kind`` and compute ``title``."""

    kind = "Declaration"

    @property
    def title(self) -> str:  # pragma: no cover - overridden everywhere
        raise NotImplementedError

    @property
    def ref(self) -> str:
        return ref(self.kind, self.title)

    @property
    def requires(self) -> Tuple[str, ...]:
        return tuple(getattr(self, "require", ()) or ())

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "title": self.title}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            out[f.name] = list(value) if isinstance(value, tuple) else value
        return out


@dataclass(frozen=True)
class ExportDeclaration(Declaration):
    path: str
    ensure: str
    clients: str
    mount: str
    options_nfs: str
    nfstag: str

    kind = "Export"

    @property
    def title(self) -> str:
        return self.path


@dataclass(frozen=True)
class IncludeDeclaration(Declaration):
    """Inclusion of an externally managed profile (baseline, metrics...)."""

    name: str
    params: Tuple[Tuple[str, Any], ...] = ()

    kind = "Include"

    @property
    def title(self) -> str:
        return self.name

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["params"] = {k: v for k, v in self.params}
        return out


@dataclass(frozen=True)
class RoleDeclaration(Declaration):
    name: str

    kind = "Role"

    @property
    def title(self) -> str:
        return self.name


@dataclass(frozen=True)
class GrantDeclaration(Declaration):
    privilege: str
    database: str
    role: str
    require: Tuple[str, ...] = ()

    kind = "Grant"

    @property
    def title(self) -> str:
        return f"{self.privilege} on {self.database} for {self.role}"


@dataclass(frozen=True)
class GuardedCommandDeclaration(Declaration):
    """SQL run through the client binary unless ``unless`` returns rows."""

    name: str
    command: str
    database: str
    db_user: str
    psql_user: str
    psql_group: str
    psql_path: str
    unless: str
    require: Tuple[str, ...] = ()

    kind = "GuardedCommand"

    @property
    def title(self) -> str:
        return self.name


@dataclass(frozen=True)
class AllowListDeclaration(Declaration):
    """Certificate identity allowed to connect over SSL to one database."""

    name: str
    user: str
    database: str
    allowed_client_certname: str
    ident_conf_path: str
    ip_mask_allow_all_users_ssl: str
    ipv6_mask_allow_all_users_ssl: str
    require: Tuple[str, ...] = ()

    kind = "AllowListEntry"

    @property
    def title(self) -> str:
        return self.name


# ---------- Plan ----------

@dataclass
class Plan:
    """Ordered, de-duplicated collection of declarations."""

    _items: Dict[str, Declaration] = field(default_factory=dict)

    def declare(self, decl: Declaration) -> Declaration:
        """
        Add ``decl`` to the plan and return the stored declaration.

        Identical re-declarations return the first instance unchanged.
        """
        existing = self._items.get(decl.ref)
        if existing is None:
            self._items[decl.ref] = decl
            return decl
        if existing == decl:
            return existing
        raise DuplicateDeclarationError(
            f"Conflicting declarations for {decl.ref}: {existing!r} != {decl!r}"
        )

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Declaration]:
        return iter(self._items.values())

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Declaration):
            return item.ref in self._items
        return item in self._items

    def of_kind(self, kind: str) -> List[Declaration]:
        return [d for d in self._items.values() if d.kind == kind]

    def ordered(self) -> List[Declaration]:
        """
        Return declarations in dependency order.

        Kahn's algorithm over the ``requires`` edges; among ready nodes the
        earliest declared goes first, so output is stable across runs.
        """
        position = {r: i for i, r in enumerate(self._items)}
        pending: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {r: [] for r in self._items}

        for r, decl in self._items.items():
            prerequisites = set(decl.requires)
            for dep in sorted(prerequisites):
                if dep not in self._items:
                    raise PlanError(f"{r} requires undeclared {dep}")
                dependents[dep].append(r)
            pending[r] = len(prerequisites)

        ready = sorted((r for r, n in pending.items() if n == 0), key=position.__getitem__)
        out: List[Declaration] = []
        while ready:
            current = ready.pop(0)
            out.append(self._items[current])
            for child in dependents[current]:
                pending[child] -= 1
                if pending[child] == 0:
                    ready.append(child)
            ready.sort(key=position.__getitem__)

        if len(out) != len(self._items):
            stuck = sorted(r for r, n in pending.items() if n > 0)
            raise PlanError("Dependency cycle between: " + ", ".join(stuck))
        return out

    # ---------- Rendering ----------

    def to_dict(self) -> Dict[str, Any]:
        return {"resources": [d.to_dict() for d in self.ordered()]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=False)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
