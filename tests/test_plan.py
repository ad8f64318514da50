import json

import pytest
import yaml

from reportsync.core.plan import (
    DuplicateDeclarationError,
    GrantDeclaration,
    IncludeDeclaration,
    Plan,
    PlanError,
    RoleDeclaration,
    ref,
)


def test_identical_redeclaration_is_noop():
    plan = Plan()
    first = plan.declare(RoleDeclaration(name="reader"))
    second = plan.declare(RoleDeclaration(name="reader"))
    assert first is second
    assert len(plan) == 1


def test_conflicting_redeclaration_raises():
    plan = Plan()
    plan.declare(IncludeDeclaration(name="p", params=(("a", 1),)))
    with pytest.raises(DuplicateDeclarationError):
        plan.declare(IncludeDeclaration(name="p", params=(("a", 2),)))


def test_ordered_respects_requires_not_declaration_order():
    plan = Plan()
    role_ref = ref("Role", "reader")
    plan.declare(GrantDeclaration(privilege="CONNECT", database="db1", role="reader", require=(role_ref,)))
    plan.declare(IncludeDeclaration(name="standalone"))
    plan.declare(RoleDeclaration(name="reader"))

    refs = [d.ref for d in plan.ordered()]
    assert refs.index(role_ref) < refs.index("Grant[CONNECT on db1 for reader]")
    # declaration order breaks ties between independent nodes
    assert refs[0] == "Include[standalone]"


def test_unknown_requirement_raises():
    plan = Plan()
    plan.declare(GrantDeclaration(privilege="CONNECT", database="db1", role="x", require=("Role[x]",)))
    with pytest.raises(PlanError):
        plan.ordered()


def test_cycle_raises():
    plan = Plan()
    plan.declare(GrantDeclaration(privilege="A", database="d", role="r", require=("Grant[B on d for r]",)))
    plan.declare(GrantDeclaration(privilege="B", database="d", role="r", require=("Grant[A on d for r]",)))
    with pytest.raises(PlanError) as ei:
        plan.ordered()
    assert "cycle" in str(ei.value)


def test_rendering_yaml_and_json():
    plan = Plan()
    plan.declare(RoleDeclaration(name="reader"))
    plan.declare(IncludeDeclaration(name="metrics", params=(("version", "1.0"),)))

    as_yaml = yaml.safe_load(plan.to_yaml())
    as_json = json.loads(plan.to_json())
    assert as_yaml == as_json
    kinds = [r["kind"] for r in as_json["resources"]]
    assert kinds == ["Role", "Include"]
    assert as_json["resources"][1]["params"] == {"version": "1.0"}


def test_of_kind_and_contains():
    plan = Plan()
    decl = plan.declare(RoleDeclaration(name="reader"))
    assert decl in plan
    assert "Role[reader]" in plan
    assert plan.of_kind("Role") == [decl]
    assert plan.of_kind("Grant") == []


def test_repeated_requirement_does_not_release_early():
    plan = Plan()
    role_ref = plan.declare(RoleDeclaration(name="r")).ref
    plan.declare(
        GrantDeclaration(privilege="A", database="d", role="r", require=(role_ref, role_ref, "Grant[B on d for r]"))
    )
    plan.declare(GrantDeclaration(privilege="B", database="d", role="r", require=(role_ref,)))

    refs = [d.ref for d in plan.ordered()]
    assert refs == ["Role[r]", "Grant[B on d for r]", "Grant[A on d for r]"]
