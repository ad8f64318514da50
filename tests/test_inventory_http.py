import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

from reportsync.core.inventory import InventoryClient, InventoryError, InventoryQuery
from reportsync.core.resolver import importer_query, resolve_reporting_host


class _InvHandler(BaseHTTPRequestHandler):
    calls = {"resources": 0}
    last = {"params": None, "token": None}
    mode = {"fail_first": False, "status": 200}
    nodes = [
        {"certname": "report02.example", "type": "Class", "title": "Reportsync::Importer"},
        {"certname": "report01.example", "type": "Class", "title": "Reportsync::Importer"},
        {"certname": "report01.example", "type": "Class", "title": "Reportsync::Importer"},
    ]

    protocol_version = "HTTP/1.1"

    def _send_json(self, status, obj):
        raw = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def do_GET(self):  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != "/pdb/query/v4/resources":
            self._send_json(404, {"error": "not found"})
            return
        _InvHandler.calls["resources"] += 1
        _InvHandler.last["params"] = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        _InvHandler.last["token"] = self.headers.get("X-Authentication")

        if _InvHandler.mode["fail_first"] and _InvHandler.calls["resources"] == 1:
            self._send_json(500, {"error": "boom"})
            return
        if _InvHandler.mode["status"] != 200:
            self._send_json(_InvHandler.mode["status"], {"error": "nope"})
            return

        params = _InvHandler.last["params"]
        items = list(_InvHandler.nodes)
        if "order_by" in params:
            items.sort(key=lambda i: i["certname"])
        if "limit" in params:
            items = items[: int(params["limit"])]
        self._send_json(200, items)

    def log_message(self, fmt, *args):
        return


@pytest.fixture()
def inv_server():
    _InvHandler.calls = {"resources": 0}
    _InvHandler.last = {"params": None, "token": None}
    _InvHandler.mode = {"fail_first": False, "status": 200}
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _InvHandler)
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    base_url = f"http://{srv.server_address[0]}:{srv.server_address[1]}"
    try:
        yield base_url
    finally:
        srv.shutdown()
        t.join(timeout=1.0)


def test_query_sends_predicate_and_dedups(inv_server):
    client = InventoryClient(inv_server, token="TEST", retries=0, timeout_sec=2)
    nodes = client.query(InventoryQuery(resource_type="Class", title="Reportsync::Importer"))

    assert nodes == ["report01.example", "report02.example"]
    params = _InvHandler.last["params"]
    assert json.loads(params["query"])[:3] == ["and", ["=", "type", "Class"], ["=", "title", "Reportsync::Importer"]]
    assert json.loads(params["order_by"]) == [{"field": "certname", "order": "asc"}]
    assert "limit" not in params
    assert _InvHandler.last["token"] == "TEST"


def test_importer_query_is_limited_to_one(inv_server):
    client = InventoryClient(inv_server, retries=0, timeout_sec=2)
    assert client.query(importer_query()) == ["report01.example"]
    assert _InvHandler.last["params"]["limit"] == "1"


def test_resolver_against_http_inventory(inv_server):
    client = InventoryClient(inv_server, retries=0, timeout_sec=2)
    assert resolve_reporting_host(None, client) == "report01.example"


def test_identical_queries_are_cached(inv_server):
    client = InventoryClient(inv_server, retries=0, timeout_sec=2)
    a = client.importer_nodes("Reportsync::Importer")
    b = client.importer_nodes("Reportsync::Importer")
    assert a == b
    assert _InvHandler.calls["resources"] == 1


def test_retry_on_5xx_then_success(inv_server):
    _InvHandler.mode["fail_first"] = True
    client = InventoryClient(inv_server, retries=1, timeout_sec=2, backoff_base_sec=0.01)
    assert client.importer_nodes("Reportsync::Importer")
    assert _InvHandler.calls["resources"] == 2


def test_no_retry_on_4xx(inv_server, caplog):
    _InvHandler.mode["status"] = 403
    client = InventoryClient(inv_server, retries=3, timeout_sec=2, backoff_base_sec=0.01)
    with pytest.raises(InventoryError) as ei:
        client.importer_nodes("Reportsync::Importer")
    assert ei.value.status == 403
    assert _InvHandler.calls["resources"] == 1
    assert any(r.levelname == "WARNING" for r in caplog.records)


def test_exhausted_retries_raise(inv_server):
    _InvHandler.mode["status"] = 503
    client = InventoryClient(inv_server, retries=2, timeout_sec=2, backoff_base_sec=0.01)
    with pytest.raises(InventoryError) as ei:
        client.importer_nodes("Reportsync::Importer")
    assert ei.value.status == 503
    assert _InvHandler.calls["resources"] == 3


def test_connection_error_is_inventory_error():
    client = InventoryClient("http://127.0.0.1:9", retries=0, timeout_sec=0.5)
    with pytest.raises(InventoryError) as ei:
        client.importer_nodes("Reportsync::Importer")
    assert ei.value.status == 0


def test_base_url_required():
    with pytest.raises(ValueError):
        InventoryClient("")
