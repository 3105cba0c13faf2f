"""Structured package descriptor types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from constants import Constants, SourceKind
from versioning.models import ANY_RANGE, DependencyKind, PackageId, PackageVersion, VersionRange


@dataclass(frozen=True)
class PlatformPredicate:
    """Platform restriction: optional allow-list plus exclusions.

    Entries may name a platform (``linux``) or a family (``unix``).
    """
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()

    @classmethod
    def from_entries(cls, entries: List[str]) -> "PlatformPredicate":
        include = []
        exclude = []
        for entry in entries:
            entry = entry.strip().lower()
            if entry.startswith("!"):
                exclude.append(entry[1:])
            elif entry:
                include.append(entry)
        return cls(tuple(include), tuple(exclude))

    @staticmethod
    def _matches(entry: str, platform: str) -> bool:
        return entry == platform or platform in Constants.PLATFORM_FAMILIES.get(entry, [])

    def allows(self, platform: Optional[str]) -> bool:
        """True if ``platform`` satisfies the predicate; None means unknown and passes."""
        if platform is None:
            return True
        platform = platform.lower()
        if self.include and not any(self._matches(e, platform) for e in self.include):
            return False
        return not any(self._matches(e, platform) for e in self.exclude)

    @property
    def is_unrestricted(self) -> bool:
        return not self.include and not self.exclude

    def to_list(self) -> List[str]:
        return list(self.include) + ["!" + e for e in self.exclude]


ANY_PLATFORM = PlatformPredicate()


@dataclass(frozen=True)
class GitSource:
    """Version-control checkout of ``ref`` (tag, branch or commit)."""
    url: str
    ref: Optional[str] = None

    @property
    def kind(self) -> SourceKind:
        return SourceKind.GIT

    @property
    def declared_hash(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ArchiveSource:
    """Downloadable archive (or single file) with an optional declared hash."""
    url: str
    hash: Optional[str] = None

    @property
    def kind(self) -> SourceKind:
        return SourceKind.ARCHIVE

    @property
    def declared_hash(self) -> Optional[str]:
        return self.hash


@dataclass(frozen=True)
class LocalSource:
    """Directory or file on the local filesystem."""
    path: str

    @property
    def kind(self) -> SourceKind:
        return SourceKind.LOCAL

    @property
    def declared_hash(self) -> Optional[str]:
        return None


SourceLocation = Union[GitSource, ArchiveSource, LocalSource]


def source_to_dict(source: SourceLocation) -> Dict[str, Any]:
    """Serialize a source location for the lockfile."""
    if isinstance(source, GitSource):
        data: Dict[str, Any] = {"kind": "git", "url": source.url}
        if source.ref:
            data["ref"] = source.ref
        return data
    if isinstance(source, ArchiveSource):
        data = {"kind": "archive", "url": source.url}
        if source.hash:
            data["hash"] = source.hash
        return data
    return {"kind": "local", "path": source.path}


def source_from_dict(data: Dict[str, Any]) -> SourceLocation:
    """Inverse of :func:`source_to_dict`."""
    kind = data.get("kind")
    if kind == "git":
        return GitSource(data["url"], data.get("ref"))
    if kind == "archive":
        return ArchiveSource(data["url"], data.get("hash"))
    if kind == "local":
        return LocalSource(data["path"])
    raise ValueError(f"unknown source kind: {kind!r}")


class BuildBackend(Enum):
    """Closed set of build strategies."""
    BUILTIN = "builtin"
    NATIVE = "native"
    MAKE = "make"
    CMAKE = "cmake"
    COMMAND = "command"
    NONE = "none"


@dataclass(frozen=True)
class BuildSpec:
    """Backend tag plus its free-form parameters."""
    backend: BuildBackend = BuildBackend.NONE
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def modules(self) -> Dict[str, Any]:
        """Declared module entrypoints; a plain list maps each name to None."""
        modules = self.parameters.get("modules") or {}
        if isinstance(modules, list):
            return {str(name): None for name in modules}
        return dict(modules)

    @property
    def install(self) -> Dict[str, Dict[str, str]]:
        return dict(self.parameters.get("install") or {})


@dataclass(frozen=True)
class DependencyConstraint:
    """Requirement on another package."""
    name: str
    range: VersionRange = ANY_RANGE
    kind: DependencyKind = DependencyKind.RUNTIME
    platforms: PlatformPredicate = ANY_PLATFORM

    def applies_to(self, platform: Optional[str]) -> bool:
        return self.platforms.allows(platform)

    def __str__(self) -> str:
        if self.range.is_any:
            return self.name
        return f"{self.name} {self.range}"


@dataclass(frozen=True)
class Descriptor:
    """Parsed package manifest."""
    name: str
    version: PackageVersion
    source: SourceLocation
    dependencies: Tuple[DependencyConstraint, ...] = ()
    build: BuildSpec = field(default_factory=BuildSpec)
    supported_runtime_versions: Tuple[str, ...] = ()
    platforms: PlatformPredicate = ANY_PLATFORM
    summary: str = ""
    license: Optional[str] = None

    @property
    def package_id(self) -> PackageId:
        return PackageId(self.name, self.version)

    def dependencies_of(self, kind: DependencyKind, platform: Optional[str] = None) -> List[DependencyConstraint]:
        """Dependencies of one edge kind that apply on ``platform``."""
        return [d for d in self.dependencies if d.kind is kind and d.applies_to(platform)]

    def supports_runtime(self, runtime_version: Optional[str]) -> bool:
        if runtime_version is None or not self.supported_runtime_versions:
            return True
        return runtime_version in self.supported_runtime_versions

    def supports(self, runtime_version: Optional[str], platform: Optional[str]) -> bool:
        return self.supports_runtime(runtime_version) and self.platforms.allows(platform)
