"""Resolution graph: chosen package versions and the edges they satisfy.

A graph has one section per edge kind. The runtime section is the flat
install set; the build section holds tools needed to build members of the
other sections; the test section holds the root's test-only requirements.
Inside a section each name maps to exactly one version, while sections may
disagree with each other.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from descriptor.models import Descriptor, SourceLocation
from .models import DependencyKind, PackageId, PackageVersion, VersionRange

ROOT = "<root>"


@dataclass(frozen=True)
class ResolvedNode:
    """A chosen package version."""
    descriptor: Descriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def version(self) -> PackageVersion:
        return self.descriptor.version

    @property
    def package_id(self) -> PackageId:
        return self.descriptor.package_id

    @property
    def source(self) -> SourceLocation:
        return self.descriptor.source


@dataclass(frozen=True)
class Edge:
    """A satisfied dependency constraint.

    ``dependent`` is a node name (possibly in another section) or ``ROOT``.
    """
    dependent: str
    target: str
    range: VersionRange
    kind: DependencyKind


@dataclass
class GraphSection:
    """Flat set of nodes for one edge kind."""
    kind: DependencyKind
    nodes: Dict[str, ResolvedNode] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def runtime_dependencies(self, name: str) -> List[str]:
        """Names this node depends on through runtime edges inside the section."""
        seen: List[str] = []
        for edge in self.edges:
            if edge.dependent == name and edge.kind is DependencyKind.RUNTIME and edge.target not in seen:
                seen.append(edge.target)
        return seen

    def unsatisfied_edges(self) -> List[Edge]:
        return [
            e for e in self.edges
            if e.target not in self.nodes or not e.range.contains(self.nodes[e.target].version)
        ]

    def find_cycle(self) -> Optional[List[str]]:
        """Return one runtime-edge cycle as a name path, or None."""
        white, grey, black = 0, 1, 2
        color = {name: white for name in self.nodes}
        stack: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            color[name] = grey
            stack.append(name)
            for dep in self.runtime_dependencies(name):
                if dep not in color:
                    continue
                if color[dep] == grey:
                    return stack[stack.index(dep):] + [dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[name] = black
            return None

        for name in sorted(self.nodes):
            if color[name] == white:
                found = visit(name)
                if found:
                    return found
        return None

    def topological_order(self) -> List[str]:
        """Names ordered dependencies-first (assumes no runtime cycle)."""
        order: List[str] = []
        done = set()

        def visit(name: str) -> None:
            if name in done:
                return
            done.add(name)
            for dep in self.runtime_dependencies(name):
                if dep in self.nodes:
                    visit(dep)
            order.append(name)

        for name in sorted(self.nodes):
            visit(name)
        return order


@dataclass
class ResolutionGraph:
    """All sections of one resolution."""
    runtime: GraphSection = field(default_factory=lambda: GraphSection(DependencyKind.RUNTIME))
    build: GraphSection = field(default_factory=lambda: GraphSection(DependencyKind.BUILD))
    test: GraphSection = field(default_factory=lambda: GraphSection(DependencyKind.TEST))

    def section(self, kind: DependencyKind) -> GraphSection:
        if kind is DependencyKind.RUNTIME:
            return self.runtime
        if kind is DependencyKind.BUILD:
            return self.build
        return self.test

    def sections(self) -> Iterator[GraphSection]:
        yield self.runtime
        yield self.build
        yield self.test

    def is_consistent(self) -> bool:
        """Every edge's range contains its target's chosen version."""
        return all(not s.unsatisfied_edges() for s in self.sections())

    def versions(self, kind: DependencyKind = DependencyKind.RUNTIME) -> Dict[str, str]:
        return {name: str(node.version) for name, node in sorted(self.section(kind).nodes.items())}
