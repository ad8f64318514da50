from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .plan import Declaration, Plan
from .substrate import Substrate, SubstrateError

_DISPATCH: Dict[str, str] = {
    "Export": "declare_export",
    "Include": "include",
    "Role": "create_role",
    "Grant": "grant_privilege",
    "GuardedCommand": "run_guarded_command",
    "AllowListEntry": "declare_allow_list_entry",
}


@dataclass(frozen=True)
class ApplyResult:
    index: int
    ref: str
    status: str
    error: str = ""


class PlanApplier:
    """
    Hand every declaration of a plan to a substrate, in dependency order.

    A substrate failure is recorded as ERROR, logged, and re-raised: nothing
    after the failing step is attempted. ``Substrate.finish`` runs once at
    the end either way (exports reload).
    """

    def __init__(self, substrate: Substrate, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.substrate = substrate
        self.log = logger or logging.getLogger("rs.applier")
        self.results: List[ApplyResult] = []
        self.counts: Dict[str, int] = {}

    def _handler(self, decl: Declaration):
        name = _DISPATCH.get(decl.kind)
        if not name:
            raise SubstrateError(f"No handler for declaration kind {decl.kind!r}")
        return getattr(self.substrate, name)

    def apply(self, plan: Plan) -> Tuple[List[ApplyResult], Dict[str, int]]:
        self.results = []
        self.counts = {}

        for idx, decl in enumerate(plan.ordered()):
            try:
                status = self._handler(decl)(decl)
            except SubstrateError as e:
                self._append(ApplyResult(idx, decl.ref, "ERROR", error=str(e)))
                self.log.error("%s failed: %s", decl.ref, e)
                # reload what was applied before the failure
                self.substrate.finish()
                raise
            self._append(ApplyResult(idx, decl.ref, status))
            if status == "UNCHANGED":
                self.log.debug("%s unchanged", decl.ref)
            else:
                self.log.info("%s %s", decl.ref, status.lower())

        self.substrate.finish()
        return self.results, self.counts

    def _append(self, res: ApplyResult) -> None:
        self.results.append(res)
        self.counts[res.status] = self.counts.get(res.status, 0) + 1
