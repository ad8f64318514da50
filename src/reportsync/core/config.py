from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv


class ConfigError(ValueError):
    """Raised when runtime configuration cannot be resolved."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class ReportingSection:
    host: str = ""                                   # explicit reporting host, wins over inventory
    source_addresses: List[str] = field(default_factory=list)
    importer_class: str = "Reportsync::Importer"
    mount_root: str = "/srv/reportsync"


@dataclass
class ExportsSection:
    enabled: bool = True
    exports_file: str = "/etc/exports.d/reportsync.exports"
    reload_command: str = "exportfs -ra"   # empty -> do not reload


@dataclass
class DatabaseSection:
    superuser: str = "postgres"
    group: str = ""                                  # empty -> same as superuser
    psql_path: str = "/opt/fleet/server/bin/psql"
    read_role: str = "reportsync_read"
    data_root: str = "/opt/fleet/server/data/postgresql"


@dataclass
class InventorySection:
    base_url: str = ""
    token: str = ""          # secret – never log in clear text
    cert: str = ""
    key: str = ""
    ca: str = ""
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 3


@dataclass
class MetricsSection:
    install_command: str = ""


@dataclass
class FactsSection:
    path: str = ""


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    reporting: ReportingSection
    exports: ExportsSection
    database: DatabaseSection
    inventory: InventorySection
    metrics: MetricsSection
    facts: FactsSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./reportsync.yml",
    os.path.expanduser("~/.config/reportsync/config.yml"),
    "/etc/reportsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False},
    "reporting": {
        "host": "",
        "source_addresses": [],
        "importer_class": "Reportsync::Importer",
        "mount_root": "/srv/reportsync",
    },
    "exports": {
        "enabled": True,
        "exports_file": "/etc/exports.d/reportsync.exports",
        "reload_command": "exportfs -ra",
    },
    "database": {
        "superuser": "postgres",
        "group": "",
        "psql_path": "/opt/fleet/server/bin/psql",
        "read_role": "reportsync_read",
        "data_root": "/opt/fleet/server/data/postgresql",
    },
    "inventory": {
        "base_url": "",
        "token": "",
        "cert": "",
        "key": "",
        "ca": "",
        "verify_tls": True,
        "timeout_sec": 30,
        "retries": 3,
    },
    "metrics": {"install_command": ""},
    "facts": {"path": ""},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}

_BOOL_KEYS = {"verify_tls", "dry_run", "enabled"}
_INT_KEYS = {"timeout_sec", "retries"}
_LIST_KEYS = {"source_addresses"}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str = "RSYNC_") -> Dict[str, Any]:
    """
    Convert RSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans, integers and lists in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def to_list(x: Any) -> List[str]:
        if x is None:
            return []
        if isinstance(x, (list, tuple)):
            return [str(i).strip() for i in x if str(i).strip()]
        return [p.strip() for p in str(x).split(",") if p.strip()]

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        leaf = key_path[-1] if key_path else ""
        if leaf in _LIST_KEYS:
            return to_list(obj)
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        if leaf in _BOOL_KEYS:
            return to_bool(obj)
        if leaf in _INT_KEYS:
            try:
                return int(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"'{'.'.join(key_path)}' must be an integer, got {obj!r}")
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate fields every run needs.
    """
    missing = []
    if not cfg.get("facts", {}).get("path"):
        missing.append("facts.path")
    if not cfg.get("reporting", {}).get("source_addresses") and not cfg.get("inventory", {}).get("base_url"):
        missing.append("inventory.base_url (or reporting.source_addresses)")
    if missing:
        raise ConfigError("Missing required configuration: " + ", ".join(missing))


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "RSYNC_",
    *,
    validate: bool = True,
    dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix RSYNC_, nested via __), `.env` included
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/int/list)
      - validation of required fields
      - database.group falls back to database.superuser
    """
    if dotenv:
        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)

    file_cfg = _load_first_existing(files)
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    if validate:
        _validate(merged)

    database = dict(merged.get("database", {}))
    if not database.get("group"):
        database["group"] = database.get("superuser", "")

    try:
        return AppConfig(
            app=AppSection(**merged.get("app", {})),
            reporting=ReportingSection(**merged.get("reporting", {})),
            exports=ExportsSection(**merged.get("exports", {})),
            database=DatabaseSection(**database),
            inventory=InventorySection(**merged.get("inventory", {})),
            metrics=MetricsSection(**merged.get("metrics", {})),
            facts=FactsSection(**merged.get("facts", {})),
            logging=LoggingSection(**merged.get("logging", {})),
        )
    except TypeError as e:
        raise ConfigError(f"Unknown configuration key: {e}") from e
