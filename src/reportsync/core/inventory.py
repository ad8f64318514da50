"""
Fleet inventory client (resources query API).

- One ``requests.Session`` per client; optional mutual TLS (client cert + CA).
- Retries with exponential backoff on connection errors, timeouts and 5xx.
- No retry on 4xx.
- Failures surface as ``InventoryError`` carrying status, url and body.
- Identical queries are answered from a per-run in-memory cache.

Usage:
    client = InventoryClient("https://inventory.example:8081", cert=("c.pem", "k.pem"))
    client.query(InventoryQuery(resource_type="Class", title="Reportsync::Importer"))
    # -> ["report01.example", ...]
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import requests

__all__ = ["InventoryQuery", "InventoryClient", "InventoryError", "RESOURCES_ENDPOINT"]

RESOURCES_ENDPOINT = "/pdb/query/v4/resources"


@dataclass
class InventoryError(Exception):
    """Inventory service failure with context."""
    status: int
    url: str
    body: str = ""
    message: str = ""

    def __str__(self) -> str:
        base = f"InventoryError(status={self.status}, url={self.url})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base


@dataclass(frozen=True)
class InventoryQuery:
    """Structured predicate over declared resources."""
    resource_type: str
    title: str
    active_only: bool = True
    order_by: Optional[str] = "certname"
    limit: Optional[int] = None

    def to_ast(self) -> List[Any]:
        clauses: List[Any] = [
            "and",
            ["=", "type", self.resource_type],
            ["=", "title", self.title],
        ]
        if self.active_only:
            clauses.append(
                [
                    "in",
                    "certname",
                    [
                        "extract",
                        "certname",
                        ["select_nodes", ["and", ["null?", "deactivated", True], ["null?", "expired", True]]],
                    ],
                ]
            )
        return clauses

    def to_params(self) -> Dict[str, str]:
        params = {"query": json.dumps(self.to_ast())}
        if self.order_by:
            params["order_by"] = json.dumps([{"field": self.order_by, "order": "asc"}])
        if self.limit is not None:
            params["limit"] = str(int(self.limit))
        return params

    def cache_key(self) -> Tuple[Any, ...]:
        return (self.resource_type, self.title, self.active_only, self.order_by, self.limit)


class InventoryClient:
    """Callable query collaborator: ``client(query) -> [certname, ...]``."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        cert: Optional[Union[str, Tuple[str, str]]] = None,
        verify: Union[bool, str] = True,
        timeout_sec: float = 30,
        retries: int = 3,
        backoff_base_sec: float = 0.05,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff = float(backoff_base_sec)
        self.log = logger or logging.getLogger("rs.inventory")

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": "ReportSync/inventory"})
        if token:
            self.session.headers["X-Authentication"] = token
        self.session.verify = verify
        if cert:
            self.session.cert = cert

        self._cache: Dict[Tuple[Any, ...], List[str]] = {}

    # ------------- Public API -------------

    def __call__(self, query: InventoryQuery) -> List[str]:
        return self.query(query)

    def query(self, query: InventoryQuery) -> List[str]:
        key = query.cache_key()
        if key in self._cache:
            return list(self._cache[key])

        payload = self._get_json(RESOURCES_ENDPOINT, query.to_params())
        if not isinstance(payload, list):
            raise InventoryError(status=200, url=self._url(RESOURCES_ENDPOINT), message="expected a JSON list")

        certnames: List[str] = []
        for item in payload:
            name = item.get("certname") if isinstance(item, dict) else None
            if name and name not in certnames:
                certnames.append(str(name))

        self._cache[key] = certnames
        self.log.debug("Inventory query type=%s title=%s -> %d node(s)", query.resource_type, query.title, len(certnames))
        return list(certnames)

    def importer_nodes(self, title: str) -> List[str]:
        """Every active node declaring ``title``, ascending."""
        return self.query(InventoryQuery(resource_type="Class", title=title, active_only=True, order_by="certname"))

    # ------------- Internal -------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get_json(self, path: str, params: Dict[str, str]) -> Any:
        url = self._url(path)
        attempts = self.retries + 1
        for attempt in range(attempts):
            start = time.time()
            try:
                resp = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                err = InventoryError(status=0, url=url, message=str(e))
                self.log.warning("GET %s failed (status=0): %s", path, e)
                if attempt < attempts - 1:
                    self._sleep_backoff(attempt)
                    continue
                raise err from e

            elapsed = (time.time() - start) * 1000
            if resp.status_code >= 400:
                err = InventoryError(status=resp.status_code, url=url, body=resp.text or "")
                self.log.warning("GET %s failed (status=%s)", path, resp.status_code)
                if 500 <= resp.status_code < 600 and attempt < attempts - 1:
                    self._sleep_backoff(attempt)
                    continue
                raise err

            self.log.debug("GET %s -> %s in %.1fms", path, resp.status_code, elapsed)
            try:
                return resp.json()
            except ValueError as e:
                raise InventoryError(status=resp.status_code, url=url, body=resp.text[:200], message=str(e)) from e

        raise InventoryError(status=0, url=url, message="retries exhausted")  # pragma: no cover

    def _sleep_backoff(self, attempt: int) -> None:
        time.sleep(self.backoff * (2 ** attempt))
