"""Build configuration and artifact types."""

from __future__ import annotations

import json
import platform as _platform
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from constants import Constants
from descriptor.models import BuildBackend


def host_platform() -> str:
    """Platform name as used by descriptor predicates."""
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "macosx"
    if sys.platform.startswith("freebsd"):
        return "freebsd"
    if sys.platform.startswith("openbsd"):
        return "openbsd"
    if sys.platform.startswith("netbsd"):
        return "netbsd"
    if sys.platform == "cygwin":
        return "cygwin"
    if sys.platform == "win32":
        return "win32"
    return sys.platform


def host_triple() -> str:
    machine = (_platform.machine() or "unknown").lower()
    machine = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    system = host_platform()
    if system == "linux":
        return f"{machine}-unknown-linux-gnu"
    if system == "macosx":
        return f"{machine}-apple-darwin"
    if system == "win32":
        return f"{machine}-pc-windows-msvc"
    return f"{machine}-unknown-{system}"


@dataclass(frozen=True)
class BuildConfig:
    """Target runtime/platform plus backend parameters.

    ``variables`` overrides discovered locations (``LUA_INCDIR``, ``<DEP>_DIR``,
    ``<DEP>_INCDIR``, ``<DEP>_LIBDIR``) and tools (``CC``, ``MAKE``, ``CMAKE``).
    """
    runtime_version: str = field(default_factory=lambda: Constants.DEFAULT_RUNTIME_VERSION)
    platform: str = field(default_factory=host_platform)
    target_triple: str = field(default_factory=host_triple)
    cflags: Tuple[str, ...] = ("-O2", "-fPIC")
    ldflags: Tuple[str, ...] = ()
    variables: Dict[str, str] = field(default_factory=dict)

    def canonical(self) -> Dict[str, Any]:
        """Stable representation used for store keys and entry metadata."""
        return {
            "runtime_version": self.runtime_version,
            "platform": self.platform,
            "target_triple": self.target_triple,
            "cflags": list(self.cflags),
            "ldflags": list(self.ldflags),
            "variables": {k: self.variables[k] for k in sorted(self.variables)},
        }

    def __hash__(self) -> int:
        return hash(json.dumps(self.canonical(), sort_keys=True))

    @property
    def shared_library_suffix(self) -> str:
        return ".dll" if self.platform in Constants.PLATFORM_FAMILIES["windows"] else ".so"


@dataclass
class BuildArtifact:
    """Files a build produced, relative to ``root`` (their install paths)."""
    root: str
    backend: BuildBackend
    files: List[str] = field(default_factory=list)
    modules: Dict[str, str] = field(default_factory=dict)
    log_excerpt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.backend.value,
            "files": list(self.files),
            "modules": dict(sorted(self.modules.items())),
        }
