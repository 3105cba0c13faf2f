"""Data models for versions, version ranges and package identity."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import semantic_version


class DependencyKind(Enum):
    """Edge kind of a dependency constraint."""
    RUNTIME = "runtime"
    BUILD = "build"
    TEST = "test"


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class PackageVersion:
    """Semantic version plus an optional recipe revision (``1.2.3-1``).

    The revision only breaks ties between equal semantic parts; a missing
    revision orders like revision 0.
    """
    semver: semantic_version.Version
    revision: Optional[int] = None
    precision: int = 3  # number of numeric components written in the source text

    def sort_key(self) -> Tuple[semantic_version.Version, int]:
        return self.semver, self.revision or 0

    @property
    def is_prerelease(self) -> bool:
        return bool(self.semver.prerelease)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __lt__(self, other: "PackageVersion") -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __str__(self) -> str:
        if self.revision is None:
            return str(self.semver)
        return f"{self.semver}-{self.revision}"


class Operator(Enum):
    """Comparator operators accepted in dependency constraints."""
    EQ = "=="
    NE = "!="
    GE = ">="
    LE = "<="
    GT = ">"
    LT = "<"
    COMPATIBLE = "~>"


@dataclass(frozen=True)
class Comparator:
    """A single ``<op> <version>`` clause."""
    operator: Operator
    version: PackageVersion

    def _compare(self, candidate: PackageVersion) -> int:
        # A comparator written without a revision ignores the candidate's one.
        if self.version.revision is None:
            left, right = candidate.semver, self.version.semver
        else:
            left, right = candidate.sort_key(), self.version.sort_key()
        if left < right:
            return -1
        if left > right:
            return 1
        return 0

    def compatible_bounds(self) -> Tuple[semantic_version.Version, semantic_version.Version]:
        """Lower (inclusive) and upper (exclusive) bound of a ``~>`` clause.

        ``~> X.Y`` admits minor increments, ``~> X.Y.Z`` admits patch
        increments, ``~> X`` admits anything with the same major.
        """
        base = self.version.semver
        lower = semantic_version.Version(major=base.major, minor=base.minor, patch=base.patch)
        if self.version.precision >= 3:
            upper = semantic_version.Version(major=base.major, minor=base.minor + 1, patch=0)
        else:
            upper = semantic_version.Version(major=base.major + 1, minor=0, patch=0)
        return lower, upper

    def matches(self, candidate: PackageVersion) -> bool:
        op = self.operator
        if op is Operator.COMPATIBLE:
            lower, upper = self.compatible_bounds()
            return lower <= candidate.semver < upper
        cmp = self._compare(candidate)
        if op is Operator.EQ:
            return cmp == 0
        if op is Operator.NE:
            return cmp != 0
        if op is Operator.GE:
            return cmp >= 0
        if op is Operator.LE:
            return cmp <= 0
        if op is Operator.GT:
            return cmp > 0
        return cmp < 0

    def __str__(self) -> str:
        return f"{self.operator.value} {self.version}"


@dataclass(frozen=True)
class VersionRange:
    """Conjunction of comparators; an empty comparator tuple matches anything."""
    comparators: Tuple[Comparator, ...] = field(default_factory=tuple)

    @property
    def is_any(self) -> bool:
        return not self.comparators

    @property
    def allows_prerelease(self) -> bool:
        """Pre-releases are only candidates when a clause names one."""
        return any(c.version.is_prerelease for c in self.comparators)

    def contains(self, version: PackageVersion) -> bool:
        return all(c.matches(version) for c in self.comparators)

    def __contains__(self, version: PackageVersion) -> bool:
        return self.contains(version)

    def intersect(self, other: "VersionRange") -> "VersionRange":
        merged = list(self.comparators)
        for comparator in other.comparators:
            if comparator not in merged:
                merged.append(comparator)
        return VersionRange(tuple(merged))

    def __str__(self) -> str:
        if self.is_any:
            return "*"
        return ", ".join(str(c) for c in self.comparators)


ANY_RANGE = VersionRange()


@dataclass(frozen=True, order=True)
class PackageId:
    """Unique identity of one resolvable unit."""
    name: str
    version: PackageVersion

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"
