"""Lockfile model and persistence.

The lockfile is JSON with one ordered mapping per graph section::

    {
      "version": 1,
      "dependencies": {
        "lpeg": {
          "version": "1.1.0-2",
          "content_hash": "sha256-...",
          "source": {"kind": "archive", "url": "...", "hash": "sha256-..."},
          "dependencies": [],
          "build_dependencies": ["luarocks-build-treesitter"],
          "entrypoint": true,
          "pinned": true
        }
      },
      "build_dependencies": {...},
      "test_dependencies": {...}
    }

Names are sorted so identical resolutions serialize identically.
``entrypoint`` marks packages the project requires directly; ``pinned``
marks packages an upgrade must leave at their locked version. Both are
written only when set.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from constants import Constants
from common.fs_utils import atomic_write_text
from descriptor.models import ArchiveSource, SourceLocation, source_from_dict, source_to_dict
from errors import RockyardError
from versioning.graph import ROOT, GraphSection, ResolutionGraph
from versioning.models import DependencyKind, PackageVersion
from versioning.parser import parse_version

logger = logging.getLogger(__name__)

_SECTION_KEYS = {
    DependencyKind.RUNTIME: "dependencies",
    DependencyKind.BUILD: "build_dependencies",
    DependencyKind.TEST: "test_dependencies",
}


class LockfileError(RockyardError):
    """The lockfile is unreadable or malformed."""


@dataclass(frozen=True)
class LockedPackage:
    """One pinned package."""
    name: str
    version: str
    content_hash: Optional[str]
    source: SourceLocation
    dependencies: Tuple[str, ...] = ()
    build_dependencies: Tuple[str, ...] = ()
    entrypoint: bool = False
    pinned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version,
            "content_hash": self.content_hash,
            "source": source_to_dict(self.source),
            "dependencies": list(self.dependencies),
        }
        if self.build_dependencies:
            data["build_dependencies"] = list(self.build_dependencies)
        if self.entrypoint:
            data["entrypoint"] = True
        if self.pinned:
            data["pinned"] = True
        return data

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "LockedPackage":
        return cls(
            name=name,
            version=str(data["version"]),
            content_hash=data.get("content_hash"),
            source=source_from_dict(data["source"]),
            dependencies=tuple(data.get("dependencies", [])),
            build_dependencies=tuple(data.get("build_dependencies", [])),
            entrypoint=bool(data.get("entrypoint", False)),
            pinned=bool(data.get("pinned", False)),
        )


@dataclass
class Lockfile:
    """Persisted snapshot of a resolution graph."""
    dependencies: Dict[str, LockedPackage] = field(default_factory=dict)
    build_dependencies: Dict[str, LockedPackage] = field(default_factory=dict)
    test_dependencies: Dict[str, LockedPackage] = field(default_factory=dict)
    version: int = Constants.LOCKFILE_VERSION

    def section(self, kind: DependencyKind) -> Dict[str, LockedPackage]:
        return getattr(self, _SECTION_KEYS[kind])

    def entries(self) -> Iterator[Tuple[DependencyKind, LockedPackage]]:
        for kind in DependencyKind:
            for name in sorted(self.section(kind)):
                yield kind, self.section(kind)[name]

    def pinned_versions(self, kind: DependencyKind) -> Dict[str, PackageVersion]:
        pins = {}
        for name, locked in self.section(kind).items():
            try:
                pins[name] = parse_version(locked.version)
            except ValueError:
                logger.warning("Ignoring unparsable pinned version %s %s", name, locked.version)
        return pins

    def held_names(self, kind: DependencyKind) -> FrozenSet[str]:
        """Names of pinned entries, which upgrades leave alone."""
        return frozenset(name for name, locked in self.section(kind).items() if locked.pinned)

    def with_content_hash(self, kind: DependencyKind, name: str, content_hash: str) -> "Lockfile":
        """Copy of this lockfile with one entry's content hash recorded."""
        return self._with_entry(kind, name, content_hash=content_hash)

    def with_pinned(self, kind: DependencyKind, name: str, pinned: bool = True) -> "Lockfile":
        """Copy of this lockfile with one entry pinned (or unpinned)."""
        return self._with_entry(kind, name, pinned=pinned)

    def _with_entry(self, kind: DependencyKind, name: str, **changes: Any) -> "Lockfile":
        sections = {k: dict(self.section(k)) for k in DependencyKind}
        try:
            sections[kind][name] = replace(sections[kind][name], **changes)
        except KeyError as exc:
            raise LockfileError(f"no {kind.value} entry named '{name}'") from exc
        return Lockfile(
            dependencies=sections[DependencyKind.RUNTIME],
            build_dependencies=sections[DependencyKind.BUILD],
            test_dependencies=sections[DependencyKind.TEST],
            version=self.version,
        )

    # -- serialization --------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version}
        for kind, key in _SECTION_KEYS.items():
            section = self.section(kind)
            data[key] = {name: section[name].to_dict() for name in sorted(section)}
        return data

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lockfile":
        if not isinstance(data, dict):
            raise LockfileError("lockfile root must be an object")
        version = data.get("version", Constants.LOCKFILE_VERSION)
        if version != Constants.LOCKFILE_VERSION:
            raise LockfileError(f"unsupported lockfile version {version}")
        sections: Dict[DependencyKind, Dict[str, LockedPackage]] = {}
        try:
            for kind, key in _SECTION_KEYS.items():
                raw = data.get(key, {}) or {}
                sections[kind] = {name: LockedPackage.from_dict(name, entry) for name, entry in raw.items()}
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise LockfileError(f"malformed lockfile entry: {exc}") from exc
        return cls(
            dependencies=sections[DependencyKind.RUNTIME],
            build_dependencies=sections[DependencyKind.BUILD],
            test_dependencies=sections[DependencyKind.TEST],
            version=version,
        )

    @classmethod
    def loads(cls, text: str) -> "Lockfile":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LockfileError(f"lockfile is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str) -> "Lockfile":
        try:
            with open(path, encoding="utf-8") as fh:
                return cls.loads(fh.read())
        except OSError as exc:
            raise LockfileError(f"cannot read lockfile {path}: {exc}") from exc

    def save(self, path: str) -> None:
        """Write atomically (temp file + rename)."""
        atomic_write_text(path, self.dumps())
        logger.debug("Wrote lockfile %s", path)

    # -- construction -----------------------------------------------------------

    @classmethod
    def from_graph(cls, graph: ResolutionGraph, previous: Optional["Lockfile"] = None) -> "Lockfile":
        """Snapshot ``graph``; content hashes carry over from ``previous`` when unchanged."""
        sections = {}
        for section in graph.sections():
            sections[section.kind] = _lock_section(section, graph.build, previous)
        return cls(
            dependencies=sections[DependencyKind.RUNTIME],
            build_dependencies=sections[DependencyKind.BUILD],
            test_dependencies=sections[DependencyKind.TEST],
        )


def _lock_section(
    section: GraphSection, build: GraphSection, previous: Optional[Lockfile]
) -> Dict[str, LockedPackage]:
    locked = {}
    for name in sorted(section.nodes):
        node = section.nodes[name]
        version = str(node.version)
        content_hash = node.source.hash if isinstance(node.source, ArchiveSource) else None
        pinned = False
        if previous is not None:
            prior = previous.section(section.kind).get(name)
            pinned = bool(prior and prior.pinned)
            if prior and prior.version == version and prior.source == node.source and prior.content_hash:
                content_hash = content_hash or prior.content_hash
        build_deps: List[str] = sorted({
            e.target for e in build.edges
            if e.dependent == name and e.kind is DependencyKind.BUILD and e.target in build.nodes
        })
        locked[name] = LockedPackage(
            name=name,
            version=version,
            content_hash=content_hash,
            source=node.source,
            dependencies=tuple(section.runtime_dependencies(name)),
            build_dependencies=tuple(build_deps),
            entrypoint=any(e.dependent == ROOT and e.target == name for e in section.edges),
            pinned=pinned,
        )
    return locked


def read_lockfile(path: str) -> Optional[Lockfile]:
    """Load ``path`` if it exists and is valid; log and return None otherwise."""
    if not os.path.isfile(path):
        return None
    try:
        return Lockfile.load(path)
    except LockfileError as exc:
        logger.warning("Ignoring invalid lockfile %s: %s", path, exc)
        return None
