import random
from collections import OrderedDict

import pytest

from dagdeploy.errors import (
    CycleDetectedError,
    DanglingReferenceError,
    DuplicateNameError,
    PlanningError,
)
from dagdeploy.graph import DependencyGraph, plan
from dagdeploy.params import ContractAddressRef, ContractSpec, Literal, ProxyConfig, SetupStep


def spec(name, *dependencies, **kwargs):
    args = OrderedDict((d.lower(), ContractAddressRef(d)) for d in dependencies)
    return ContractSpec(name=name, constructor_args=args, **kwargs)


def test_dependencies_precede_dependents():
    specs = [
        spec("Manager", "Token", "Emissions"),
        spec("Emissions", "Token"),
        spec("Token"),
        spec("Staking"),
        spec("Rewards", "Staking", "Manager"),
    ]
    deployment_plan = plan(specs)
    for step in deployment_plan:
        for dependency in step.spec.references():
            assert deployment_plan.index(dependency) < deployment_plan.index(step.name)


@pytest.mark.parametrize("seed", range(20))
def test_random_graphs_are_ordered(seed):
    rng = random.Random(seed)
    names = [f"C{i}" for i in range(rng.randint(1, 30))]
    # each contract depends only on contracts generated before it, so the graph is acyclic
    specs = [
        spec(name, *rng.sample(names[:i], rng.randint(0, min(i, 4))))
        for i, name in enumerate(names)
    ]
    rng.shuffle(specs)

    deployment_plan = plan(specs)
    assert sorted(deployment_plan.names) == sorted(names)
    for step in deployment_plan:
        for dependency in step.spec.references():
            assert deployment_plan.index(dependency) < deployment_plan.index(step.name)

    # independent of the order in which the graph was declared
    rng.shuffle(specs)
    shuffled_plan = plan(specs)
    for step in shuffled_plan:
        for dependency in step.spec.references():
            assert shuffled_plan.index(dependency) < shuffled_plan.index(step.name)


def test_independent_contracts_keep_declaration_order():
    deployment_plan = plan([spec("X"), spec("Y", "Z"), spec("Z"), spec("W")])
    assert deployment_plan.names == ["X", "Z", "Y", "W"]


def test_plan_is_deterministic():
    specs = [spec("C", "A"), spec("B"), spec("A"), spec("D", "B", "C")]
    assert plan(specs).names == plan(list(specs)).names == ["B", "A", "C", "D"]


def test_duplicate_name():
    graph = DependencyGraph()
    graph.add_contract(spec("Token"))
    with pytest.raises(DuplicateNameError, match="Token"):
        graph.add_contract(spec("Token"))


def test_dangling_reference():
    with pytest.raises(DanglingReferenceError, match="Missing"):
        plan([spec("Token", "Missing")])


def test_dangling_library_and_proxy_references():
    with pytest.raises(DanglingReferenceError):
        plan([spec("Manager", libraries=("Math",))])

    proxy = ProxyConfig(init_method="initialize", init_args=(ContractAddressRef("Token"),))
    with pytest.raises(DanglingReferenceError):
        plan([spec("Manager", proxy=proxy)])


def test_dangling_setup_target():
    with pytest.raises(DanglingReferenceError, match="Ghost"):
        plan([spec("Token")], [SetupStep("Ghost", "setup")])


def test_cycle_is_named():
    with pytest.raises(CycleDetectedError) as exc_info:
        plan([spec("Free"), spec("A", "B"), spec("B", "A")])
    assert exc_info.value.cycle == ["A", "B", "A"]
    assert "A -> B -> A" in str(exc_info.value)
    assert isinstance(exc_info.value, PlanningError)


def test_cycle_through_proxy_init():
    proxy = ProxyConfig(init_method="initialize", init_args=(ContractAddressRef("B"),))
    with pytest.raises(CycleDetectedError):
        plan([spec("A", proxy=proxy), spec("B", "A")])


def test_setup_steps_are_attached_in_declaration_order():
    steps = [
        SetupStep("B", "setup", (ContractAddressRef("A"),)),
        SetupStep("A", "configure", (Literal(1),)),
        SetupStep("B", "transferOwnership", (Literal("0x01"),)),
    ]
    deployment_plan = plan([spec("A"), spec("B", "A")], steps)
    assert [s.method for s in deployment_plan.get("B").setup_steps] == [
        "setup",
        "transferOwnership",
    ]
    assert [s.method for s in deployment_plan.get("A").setup_steps] == ["configure"]


def test_setup_step_may_reference_its_target():
    deployment_plan = plan([spec("A")], [SetupStep("A", "setup", (ContractAddressRef("A"),))])
    assert len(deployment_plan.get("A").setup_steps) == 1


def test_setup_step_forward_reference_is_rejected():
    specs = [spec("A"), spec("B")]
    steps = [SetupStep("A", "setup", (ContractAddressRef("B"),))]
    with pytest.raises(DanglingReferenceError, match="deployed after A"):
        plan(specs, steps)


def test_subset_includes_transitive_dependencies():
    specs = [spec("Token"), spec("Other"), spec("Emissions", "Token"), spec("Manager", "Emissions")]
    deployment_plan = plan(specs)
    assert deployment_plan.subset(["Manager"]).names == ["Token", "Emissions", "Manager"]
    assert deployment_plan.dependencies("Manager") == {"Token", "Emissions"}


def test_subset_includes_setup_references():
    steps = [SetupStep("B", "setup", (ContractAddressRef("A"),))]
    deployment_plan = plan([spec("A"), spec("B")], steps)
    assert deployment_plan.subset(["B"]).names == ["A", "B"]


def test_subset_unknown_name():
    with pytest.raises(DanglingReferenceError):
        plan([spec("A")]).subset(["B"])


def test_describe():
    specs = [
        spec("A"),
        ContractSpec(
            name="B",
            constructor_args=OrderedDict([("token", ContractAddressRef("A")), ("fee", Literal(30))]),
        ),
    ]
    steps = [SetupStep("B", "setup", (ContractAddressRef("A"),))]
    assert plan(specs, steps).describe() == "1. A()\n2. B(token=$A, fee=30)\n    setup: B.setup($A)"


def test_setup_step_referencing_a_dependent_is_rejected():
    specs = [spec("A"), spec("B", "A"), spec("C", "B")]
    steps = [SetupStep("B", "setup", (ContractAddressRef("A"), ContractAddressRef("C")))]
    with pytest.raises(DanglingReferenceError, match="'C'"):
        plan(specs, steps)
