import heapq
import typing
from collections import OrderedDict
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from dagdeploy.errors import CycleDetectedError, DanglingReferenceError, DuplicateNameError
from dagdeploy.params import ContractSpec, SetupStep


class PlanStep(NamedTuple):
    spec: ContractSpec
    setup_steps: typing.Tuple[SetupStep, ...] = ()

    @property
    def name(self) -> str:
        return self.spec.name


class DeploymentPlan:
    """Topologically ordered contracts, each with the setup steps that target it."""

    def __init__(self, steps: Iterable[PlanStep]):
        self.steps = tuple(steps)
        self._index = {step.name: position for position, step in enumerate(self.steps)}

    def __iter__(self):
        return iter(self.steps)

    def __len__(self):
        return len(self.steps)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    @property
    def names(self) -> List[str]:
        return [step.name for step in self.steps]

    def index(self, name: str) -> int:
        return self._index[name]

    def get(self, name: str) -> PlanStep:
        return self.steps[self._index[name]]

    def dependencies(self, name: str) -> Set[str]:
        """Transitive deployment dependencies of a contract."""
        seen = set()
        pending = list(self.get(name).spec.references())
        while pending:
            dependency = pending.pop()
            if dependency in seen:
                continue
            seen.add(dependency)
            pending.extend(self.get(dependency).spec.references())
        return seen

    def subset(self, names: Iterable[str]) -> "DeploymentPlan":
        """
        Returns the plan restricted to the given contracts and everything they depend on.
        Ordering is preserved.
        """
        pending = list(names)
        for name in pending:
            if name not in self:
                raise DanglingReferenceError(f"Contract '{name}' is not part of the plan")

        wanted = set()
        while pending:
            name = pending.pop()
            if name in wanted:
                continue
            wanted.add(name)
            step = self.get(name)
            pending.extend(step.spec.references())
            for setup_step in step.setup_steps:
                pending.extend(setup_step.references())
        return DeploymentPlan(step for step in self.steps if step.name in wanted)

    def describe(self) -> str:
        """Stable text rendering, suitable for diffing dry runs."""
        lines = list()
        for position, step in enumerate(self.steps, start=1):
            spec = step.spec
            artifact = f" ({spec.contract_type})" if spec.contract_type != spec.name else ""
            args = ", ".join(f"{k}={v!r}" for k, v in spec.constructor_args.items())
            lines.append(f"{position}. {spec.name}{artifact}({args})")
            if spec.libraries:
                lines.append(f"    libraries: {', '.join(spec.libraries)}")
            if spec.proxy is not None:
                init = ""
                if spec.proxy.init_method:
                    init_args = ", ".join(map(repr, spec.proxy.init_args))
                    init = f" init={spec.proxy.init_method}({init_args})"
                lines.append(f"    proxy: {spec.proxy.kind} owner={spec.proxy.owner!r}{init}")
            for setup_step in step.setup_steps:
                lines.append(f"    setup: {setup_step}")
        return "\n".join(lines)


class DependencyGraph:
    """Declared contracts and setup steps; produces a validated deployment plan."""

    def __init__(self):
        self._specs: Dict[str, ContractSpec] = OrderedDict()
        self._setup_steps: List[SetupStep] = list()

    def add_contract(self, spec: ContractSpec) -> None:
        if spec.name in self._specs:
            raise DuplicateNameError(f"Contract '{spec.name}' is declared more than once")
        self._specs[spec.name] = spec

    def add_setup_step(self, step: SetupStep) -> None:
        self._setup_steps.append(step)

    def dependencies(self, name: str) -> List[str]:
        """Direct dependencies of a contract, in declaration order."""
        references = self._specs[name].references()
        return [n for n in self._specs if n in references]

    def validate(self) -> None:
        """Checks that every reference names a declared contract."""
        for name, spec in self._specs.items():
            for reference in sorted(spec.references()):
                if reference not in self._specs:
                    raise DanglingReferenceError(
                        f"{name} references undeclared contract '{reference}'"
                    )

        for step in self._setup_steps:
            if step.target not in self._specs:
                raise DanglingReferenceError(
                    f"Setup step {step} targets undeclared contract '{step.target}'"
                )
            for reference in sorted(step.references()):
                if reference not in self._specs:
                    raise DanglingReferenceError(
                        f"Setup step {step} references undeclared contract '{reference}'"
                    )

    def topological_order(self) -> List[ContractSpec]:
        """
        Orders contracts so that every dependency precedes its dependents.
        Independent contracts keep their declaration order.
        """
        position = {name: index for index, name in enumerate(self._specs)}
        remaining = {name: set(self.dependencies(name)) for name in self._specs}
        dependents = {name: list() for name in self._specs}
        for name, dependencies in remaining.items():
            for dependency in dependencies:
                dependents[dependency].append(name)

        ready = [position[name] for name, dependencies in remaining.items() if not dependencies]
        heapq.heapify(ready)
        names = list(self._specs)
        ordered = list()
        while ready:
            name = names[heapq.heappop(ready)]
            ordered.append(self._specs[name])
            for dependent in dependents[name]:
                remaining[dependent].discard(name)
                if not remaining[dependent]:
                    heapq.heappush(ready, position[dependent])

        if len(ordered) != len(self._specs):
            placed = {spec.name for spec in ordered}
            raise CycleDetectedError(self._find_cycle(exclude=placed))

        return ordered

    def _find_cycle(self, exclude: Set[str]) -> List[str]:
        candidates = [name for name in self._specs if name not in exclude]
        visiting: List[str] = list()
        visited: Set[str] = set()

        def visit(name: str) -> Optional[List[str]]:
            if name in visiting:
                return visiting[visiting.index(name) :] + [name]
            if name in visited:
                return None
            visiting.append(name)
            for dependency in self.dependencies(name):
                if dependency in exclude:
                    continue
                cycle = visit(dependency)
                if cycle:
                    return cycle
            visiting.pop()
            visited.add(name)
            return None

        for candidate in candidates:
            cycle = visit(candidate)
            if cycle:
                return cycle
        return candidates  # unreachable for a well-formed graph

    def plan(self) -> DeploymentPlan:
        """Validates the graph and builds the ordered deployment plan."""
        self.validate()
        ordered = self.topological_order()
        position = {spec.name: index for index, spec in enumerate(ordered)}

        steps_by_target = OrderedDict((spec.name, list()) for spec in ordered)
        for step in self._setup_steps:
            for reference in sorted(step.references()):
                if position[reference] > position[step.target]:
                    raise DanglingReferenceError(
                        f"Setup step {step} references '{reference}', "
                        f"which is deployed after {step.target}"
                    )
            steps_by_target[step.target].append(step)

        return DeploymentPlan(
            PlanStep(spec=spec, setup_steps=tuple(steps_by_target[spec.name]))
            for spec in ordered
        )


def plan(specs: Iterable[ContractSpec], setup_steps: Iterable[SetupStep] = ()) -> DeploymentPlan:
    """Builds a deployment plan from contract declarations and setup steps."""
    graph = DependencyGraph()
    for spec in specs:
        graph.add_contract(spec)
    for step in setup_steps:
        graph.add_setup_step(step)
    return graph.plan()
