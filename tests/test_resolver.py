import pytest

from conftest import FakeInventory as _FakeInventory
from reportsync.core.inventory import InventoryError, InventoryQuery
from reportsync.core.resolver import IMPORTER_CLASS, importer_query, resolve_reporting_host


def test_explicit_host_short_circuits_inventory():
    inv = _FakeInventory(["other.example"])
    assert resolve_reporting_host("report01.example", inv) == "report01.example"
    assert inv.queries == []


def test_empty_explicit_falls_back_to_inventory():
    inv = _FakeInventory(["nodeA"])
    assert resolve_reporting_host("", inv) == "nodeA"
    assert len(inv.queries) == 1


def test_unsorted_answer_picks_smallest_identifier():
    inv = _FakeInventory(["nodeB", "nodeA"])
    assert resolve_reporting_host(None, inv) == "nodeA"


def test_query_predicate_is_fixed():
    inv = _FakeInventory([])
    resolve_reporting_host(None, inv)
    (query,) = inv.queries
    assert query == InventoryQuery(
        resource_type="Class", title=IMPORTER_CLASS, active_only=True, order_by="certname", limit=1
    )


def test_custom_importer_class_is_queried():
    inv = _FakeInventory([])
    resolve_reporting_host(None, inv, importer_class="Site::Importer")
    assert inv.queries[0].title == "Site::Importer"


def test_empty_answer_is_unresolved():
    assert resolve_reporting_host(None, _FakeInventory([])) is None


def test_query_failure_propagates():
    boom = InventoryError(status=503, url="http://inv/pdb/query/v4/resources")
    with pytest.raises(InventoryError):
        resolve_reporting_host(None, _FakeInventory(error=boom))


def test_importer_query_ast_filters_inactive_nodes():
    ast = importer_query().to_ast()
    assert ast[0] == "and"
    assert ["=", "type", "Class"] in ast
    assert ["=", "title", IMPORTER_CLASS] in ast
    assert "select_nodes" in repr(ast) and "deactivated" in repr(ast) and "expired" in repr(ast)
