from reportsync.core.clients import build_client_spec
from reportsync.core.exports import EXPORT_TAG, NFS_OPTIONS, SOURCE_TREES, reconcile_exports
from reportsync.core.plan import Plan


def test_three_exports_declared_when_enabled():
    plan = Plan()
    spec = build_client_spec(["10.0.0.5"])
    declared = reconcile_exports(plan, enabled=True, client_spec=spec, fqdn="node1.example.com")

    assert [d.path for d in declared] == list(SOURCE_TREES)
    assert len(plan.of_kind("Export")) == 3
    for d in declared:
        assert d.ensure == "mounted"
        assert d.clients == spec
        assert d.options_nfs == NFS_OPTIONS
        assert d.nfstag == EXPORT_TAG
        assert d.mount == f"/srv/reportsync/node1.example.com{d.path}"


def test_disabled_exports_are_absent_regardless_of_clients():
    plan = Plan()
    spec = build_client_spec(["10.0.0.5", "10.0.0.6"])
    declared = reconcile_exports(plan, enabled=False, client_spec=spec, fqdn="node1.example.com")
    assert {d.ensure for d in declared} == {"absent"}


def test_mount_root_and_redeclaration():
    plan = Plan()
    args = dict(enabled=True, client_spec=" localhost(ro)", fqdn="n.example", mount_root="/mnt/r/")
    first = reconcile_exports(plan, **args)
    second = reconcile_exports(plan, **args)
    assert first == second
    assert len(plan) == 3
    assert first[0].mount == "/mnt/r/n.example/var/log"
