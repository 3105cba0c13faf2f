"""Dependency resolver.

Latest-compatible search with conflict-directed backjumping over an
explicit decision stack:

* Every open package gets the highest version that satisfies the
  intersection of the constraints imposed on it so far (a lockfile pin is
  tried first when it still fits).
* Choosing a version imposes that descriptor's runtime dependencies on
  other packages. A package left with no candidate, or a new constraint
  excluding an already chosen version, is a conflict.
* A conflict's culprits are the decisions that imposed constraints on the
  package (plus the package's own decision for a clash). The search jumps
  back to the newest culprit and retries it with its next-highest
  alternative. A decision that runs out of alternatives hands its
  accumulated culprits further up. With no culprit left, the root
  constraints alone are unsatisfiable and ``ResolutionConflict`` is raised.

Each graph section (runtime, build, test) is solved independently. The
build section also follows the build dependencies of its own members, so a
build tool whose own build tools cannot be satisfied is retried at an older
version like any other decision.

A lockfile entry marked ``pinned`` keeps its version preferred even when
the caller asks for upgrades.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from descriptor.models import DependencyConstraint, Descriptor
from errors import DependencyCycle, ResolutionConflict, ResolutionNotFound
from registry.index import PackageIndex

from .graph import ROOT, Edge, GraphSection, ResolutionGraph, ResolvedNode
from .models import ANY_RANGE, DependencyKind, PackageVersion, VersionRange

logger = logging.getLogger(__name__)

_ROOT_DECISION = -1


@dataclass
class ResolveOptions:
    """Target and policy knobs for a resolution."""
    runtime_version: Optional[str] = None
    platform: Optional[str] = None
    upgrade: FrozenSet[str] = frozenset()
    upgrade_all: bool = False


@dataclass
class _Imposed:
    range: VersionRange
    dependent: str
    decision: int


@dataclass
class _Decision:
    name: str
    descriptor: Descriptor
    alternatives: List[PackageVersion]
    conflict_set: Set[int]
    imposed: List[str] = field(default_factory=list)


@dataclass
class _Conflict:
    package: str
    culprits: Set[int]
    constraints: List[Tuple[str, str]]
    exhausted: bool = False


class _SectionSolver:
    """Solves one flat section from its root constraints."""

    def __init__(
        self,
        index: PackageIndex,
        options: ResolveOptions,
        pins: Dict[str, PackageVersion],
        *,
        held: FrozenSet[str] = frozenset(),
        follow: Tuple[DependencyKind, ...] = (DependencyKind.RUNTIME,),
    ):
        self.index = index
        self.options = options
        self.pins = pins
        self.held = held
        self.follow = follow
        self.constraints: Dict[str, List[_Imposed]] = {}
        self.order: List[str] = []
        self.decisions: List[_Decision] = []
        self.decided: Dict[str, int] = {}

    # -- constraint bookkeeping -------------------------------------------

    def _impose(self, name: str, rng: VersionRange, dependent: str, decision: int) -> None:
        if name not in self.constraints:
            self.constraints[name] = []
            self.order.append(name)
        self.constraints[name].append(_Imposed(rng, dependent, decision))

    def _range_for(self, name: str) -> VersionRange:
        rng = ANY_RANGE
        for imposed in self.constraints.get(name, []):
            rng = rng.intersect(imposed.range)
        return rng

    def _imposers(self, name: str) -> Set[int]:
        return {i.decision for i in self.constraints.get(name, [])}

    def _snapshot(self, name: str) -> List[Tuple[str, str]]:
        return [(str(i.range), i.dependent) for i in self.constraints.get(name, [])]

    def _candidates(self, name: str) -> List[PackageVersion]:
        versions = self.index.available_versions(name)
        if not versions:
            imposers = self.constraints.get(name, [])
            raise ResolutionNotFound(name, imposers[0].dependent if imposers else None)
        rng = self._range_for(name)
        allow_pre = any(i.range.allows_prerelease for i in self.constraints.get(name, []))
        candidates = [v for v in versions if rng.contains(v) and (allow_pre or not v.is_prerelease)]
        pin = self.pins.get(name)
        if pin is not None and pin in candidates and not self._upgrading(name):
            candidates.remove(pin)
            candidates.insert(0, pin)
        return candidates

    def _upgrading(self, name: str) -> bool:
        if name in self.held:
            return False
        return self.options.upgrade_all or name in self.options.upgrade

    def _dependencies(self, descriptor: Descriptor) -> List[DependencyConstraint]:
        deps: List[DependencyConstraint] = []
        for kind in self.follow:
            deps.extend(descriptor.dependencies_of(kind, self.options.platform))
        return deps

    # -- decisions ----------------------------------------------------------

    def _push(self, descriptor: Descriptor, alternatives: List[PackageVersion], carried: Set[int]) -> Optional[_Conflict]:
        index = len(self.decisions)
        decision = _Decision(descriptor.name, descriptor, alternatives, set(carried))
        self.decisions.append(decision)
        self.decided[descriptor.name] = index
        label = str(descriptor.package_id)

        for dep in self._dependencies(descriptor):
            self._impose(dep.name, dep.range, label, index)
            decision.imposed.append(dep.name)
            chosen = self.decided.get(dep.name)
            if chosen is not None:
                if not dep.range.contains(self.decisions[chosen].descriptor.version):
                    return _Conflict(dep.name, self._imposers(dep.name) | {chosen}, self._snapshot(dep.name))
            elif not self._candidates(dep.name):
                return _Conflict(dep.name, self._imposers(dep.name), self._snapshot(dep.name))
        return None

    def _pop(self) -> _Decision:
        decision = self.decisions.pop()
        index = len(self.decisions)
        for name in decision.imposed:
            entries = self.constraints[name]
            for pos in range(len(entries) - 1, -1, -1):
                if entries[pos].decision == index:
                    del entries[pos]
                    break
        del self.decided[decision.name]
        return decision

    def _decide(self, name: str, candidates: List[PackageVersion], carried: Set[int]) -> Optional[_Conflict]:
        for pos, version in enumerate(candidates):
            descriptor = self.index.descriptor(name, version)
            if not descriptor.supports(self.options.runtime_version, self.options.platform):
                logger.debug("Skipping %s: unsupported on target", descriptor.package_id)
                continue
            return self._push(descriptor, candidates[pos + 1:], carried)
        return _Conflict(name, self._imposers(name) | carried, self._snapshot(name), exhausted=bool(carried))

    def _backjump(self, conflict: _Conflict) -> Optional[_Conflict]:
        culprits = {c for c in conflict.culprits if c != _ROOT_DECISION}
        target = max(culprits)
        while len(self.decisions) > target + 1:
            self._pop()
        retracted = self._pop()
        carried = retracted.conflict_set | (culprits - {target})
        logger.debug(
            "Conflict on %s: backjumping to %s (%d alternatives left)",
            conflict.package, retracted.descriptor.package_id, len(retracted.alternatives),
        )
        next_conflict = self._decide(retracted.name, retracted.alternatives, carried)
        if next_conflict is not None and not retracted.alternatives:
            next_conflict.exhausted = True
        return next_conflict

    def _next_open(self) -> Optional[str]:
        for name in self.order:
            if name not in self.decided and self.constraints.get(name):
                return name
        return None

    # -- entry point --------------------------------------------------------

    def solve(self, roots: Iterable[Tuple[DependencyConstraint, str]]) -> List[Descriptor]:
        for constraint, dependent in roots:
            self._impose(constraint.name, constraint.range, dependent, _ROOT_DECISION)

        while True:
            name = self._next_open()
            if name is None:
                break
            conflict = self._decide(name, self._candidates(name), set())
            origin: Optional[_Conflict] = None
            while conflict is not None:
                # An exhausted conflict reports the package that started the chain.
                if origin is None or not conflict.exhausted:
                    origin = conflict
                culprits = {c for c in conflict.culprits if c != _ROOT_DECISION}
                if not culprits:
                    raise ResolutionConflict(origin.package, origin.constraints)
                conflict = self._backjump(conflict)
        return [d.descriptor for d in self.decisions]


def _pins_from_lockfile(lockfile, kind: DependencyKind) -> Dict[str, PackageVersion]:
    if lockfile is None:
        return {}
    return lockfile.pinned_versions(kind)


def _held_from_lockfile(lockfile, kind: DependencyKind) -> FrozenSet[str]:
    if lockfile is None:
        return frozenset()
    return lockfile.held_names(kind)


def _fill_section(
    section: GraphSection,
    descriptors: List[Descriptor],
    roots: List[Tuple[DependencyConstraint, str]],
    follow: Tuple[DependencyKind, ...],
    platform: Optional[str],
) -> None:
    for descriptor in sorted(descriptors, key=lambda d: d.name):
        section.nodes[descriptor.name] = ResolvedNode(descriptor)
    for constraint, dependent in roots:
        section.edges.append(Edge(dependent, constraint.name, constraint.range, constraint.kind))
    for descriptor in sorted(descriptors, key=lambda d: d.name):
        for kind in follow:
            for dep in descriptor.dependencies_of(kind, platform):
                section.edges.append(Edge(descriptor.name, dep.name, dep.range, kind))


def _solve_section(
    index: PackageIndex,
    options: ResolveOptions,
    lockfile,
    kind: DependencyKind,
    roots: List[Tuple[DependencyConstraint, str]],
    follow: Tuple[DependencyKind, ...] = (DependencyKind.RUNTIME,),
) -> GraphSection:
    section = GraphSection(kind)
    if not roots:
        return section
    solver = _SectionSolver(
        index, options, _pins_from_lockfile(lockfile, kind),
        held=_held_from_lockfile(lockfile, kind), follow=follow,
    )
    descriptors = solver.solve(roots)
    _fill_section(section, descriptors, roots, follow, options.platform)
    return section


def _build_roots(
    sections: Iterable[GraphSection],
    root_constraints: List[DependencyConstraint],
    platform: Optional[str],
) -> List[Tuple[DependencyConstraint, str]]:
    """Build requirements of the root and of every runtime and test member."""
    roots = [(c, ROOT) for c in root_constraints if c.kind is DependencyKind.BUILD]
    for section in sections:
        for name in sorted(section.nodes):
            for dep in section.nodes[name].descriptor.dependencies_of(DependencyKind.BUILD, platform):
                roots.append((dep, name))
    return roots


def resolve(
    root_constraints: List[DependencyConstraint],
    index: PackageIndex,
    *,
    lockfile=None,
    options: Optional[ResolveOptions] = None,
) -> ResolutionGraph:
    """Compute a consistent resolution graph for ``root_constraints``.

    Args:
        root_constraints: The project's own requirements (any edge kind).
        index: Provider of versions and descriptors.
        lockfile: Optional existing ``Lockfile``; its pins are tried first.
        options: Target runtime/platform and upgrade policy.

    Raises:
        ResolutionConflict: constraints on some package cannot be met.
        ResolutionNotFound: a required package has no versions at all.
        DependencyCycle: the runtime dependencies form a cycle.
    """
    options = options or ResolveOptions()
    platform = options.platform
    applicable = [c for c in root_constraints if c.applies_to(platform)]
    graph = ResolutionGraph()

    graph.runtime = _solve_section(
        index, options, lockfile, DependencyKind.RUNTIME,
        [(c, ROOT) for c in applicable if c.kind is DependencyKind.RUNTIME],
    )
    cycle = graph.runtime.find_cycle()
    if cycle:
        raise DependencyCycle(cycle)

    graph.test = _solve_section(
        index, options, lockfile, DependencyKind.TEST,
        [(c, ROOT) for c in applicable if c.kind is DependencyKind.TEST],
    )

    graph.build = _solve_section(
        index, options, lockfile, DependencyKind.BUILD,
        _build_roots([graph.runtime, graph.test], applicable, platform),
        follow=(DependencyKind.RUNTIME, DependencyKind.BUILD),
    )

    logger.info(
        "Resolved %d runtime, %d build and %d test packages",
        len(graph.runtime), len(graph.build), len(graph.test),
    )
    return graph
