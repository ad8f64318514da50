"""
Node facts, loaded once per run and passed down explicitly.

Facts file (YAML or JSON):

    fqdn: db01.example.com
    database:
      installed_server_version: "11"
    platform:
      server_version: "2023.8.0"
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

__all__ = ["FactsError", "NodeFacts", "load_facts"]


class FactsError(Exception):
    """Raised when the facts source is missing or malformed."""


@dataclass(frozen=True)
class NodeFacts:
    fqdn: str
    database: Optional[Dict[str, Any]] = None
    platform: Optional[Dict[str, Any]] = None

    @property
    def is_database_host(self) -> bool:
        return self.database is not None

    @property
    def database_version(self) -> str:
        """Installed server version, ``""`` when absent."""
        if not self.database:
            return ""
        value = self.database.get("installed_server_version")
        return "" if value is None else str(value).strip()

    @property
    def is_core_platform(self) -> bool:
        return self.platform is not None

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "NodeFacts":
        fqdn = str(data.get("fqdn") or "").strip()
        if not fqdn:
            raise FactsError("Facts must provide a non-empty 'fqdn'")
        database = data.get("database")
        platform = data.get("platform")
        for key, value in (("database", database), ("platform", platform)):
            if value is not None and not isinstance(value, dict):
                raise FactsError(f"Fact '{key}' must be a mapping")
        version = (database or {}).get("installed_server_version")
        # YAML reads 10.10 as the float 10.1; integers like 11 are unambiguous
        if version is not None and (isinstance(version, bool) or not isinstance(version, (str, int))):
            raise FactsError(
                f"database.installed_server_version must be a string, got {version!r}; quote it in the facts file"
            )
        return cls(fqdn=fqdn, database=database, platform=platform)


def load_facts(path: str) -> NodeFacts:
    p = Path(path)
    if not p.exists():
        raise FactsError(f"Facts file not found: {path}")
    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix.lower() == ".json":
            data = json.loads(text or "{}")
        else:
            data = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise FactsError(f"Cannot parse facts file {path}: {e}") from e
    if not isinstance(data, dict):
        raise FactsError(f"Top-level facts must be a mapping: {path}")
    return NodeFacts.from_mapping(data)
