"""Error taxonomy shared by every component.

Library code raises these; rendering them (and choosing exit codes) is left to
the command surface that calls into the core.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple


class RockyardError(Exception):
    """Base class for all rockyard errors."""


class ParseError(RockyardError):
    """A descriptor could not be parsed."""

    def __init__(self, line: int, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"line {line}: {reason}")


class ResolutionError(RockyardError):
    """No valid resolution graph exists."""


class ResolutionConflict(ResolutionError):
    """The constraints on a package intersect to the empty set.

    ``constraints`` holds ``(range, dependent)`` pairs, one per constraint that
    took part in the conflict.
    """

    def __init__(self, package: str, constraints: Sequence[Tuple[str, str]]):
        self.package = package
        self.constraints: List[Tuple[str, str]] = list(constraints)
        details = "; ".join(f"{dependent} requires {package} {rng}" for rng, dependent in self.constraints)
        super().__init__(f"no version of '{package}' satisfies all constraints: {details}")

    @property
    def dependents(self) -> List[str]:
        """Names of the packages imposing the conflicting constraints."""
        return [dependent for _, dependent in self.constraints]


class ResolutionNotFound(ResolutionError):
    """The index has no versions at all for a required package."""

    def __init__(self, package: str, required_by: Optional[str] = None):
        self.package = package
        self.required_by = required_by
        suffix = f" (required by {required_by})" if required_by else ""
        super().__init__(f"package '{package}' not found in index{suffix}")


class DependencyCycle(ResolutionError):
    """The runtime-edge subgraph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("runtime dependency cycle: " + " -> ".join(self.cycle))


class SourceFetchError(RockyardError):
    """Fetching a package source failed."""


class NetworkError(SourceFetchError):
    """A transient transport failure (retried with backoff)."""


class SourceNotFound(SourceFetchError):
    """The source location does not exist."""


class IntegrityMismatch(SourceFetchError):
    """Fetched content does not match the declared hash."""

    def __init__(self, declared: str, actual: str):
        self.declared = declared
        self.actual = actual
        super().__init__(f"integrity mismatch: declared {declared}, got {actual}")


class BuildError(RockyardError):
    """A build backend failed. Subclasses carry the failure detail."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"[{backend}] {message}")


class ToolMissing(BuildError):
    """A required build tool (compiler, make, headers) is unavailable."""

    def __init__(self, backend: str, tool: str):
        self.tool = tool
        super().__init__(backend, f"required tool not found: {tool}")


class ProcessFailed(BuildError):
    """A build step exited with a non-zero status."""

    def __init__(self, backend: str, exit_code: int, log_excerpt: str, command: str = ""):
        self.exit_code = exit_code
        self.log_excerpt = log_excerpt
        self.command = command
        super().__init__(backend, f"'{command}' exited with status {exit_code}\n{log_excerpt}")


class ArtifactMissing(BuildError):
    """Every step succeeded but a declared entrypoint was not produced."""

    def __init__(self, backend: str, expected_path: str):
        self.expected_path = expected_path
        super().__init__(backend, f"declared artifact missing after build: {expected_path}")


class BuildCancelled(BuildError):
    """The build was cancelled while a step was running."""

    def __init__(self, backend: str):
        super().__init__(backend, "build cancelled")


class StoreError(RockyardError):
    """Local store failure."""


class StoreLockTimeout(StoreError):
    """The per-key lock could not be acquired in time."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s waiting for store lock {key}")


class StoreCorrupted(StoreError):
    """A store entry stayed unreadable after being rebuilt."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"store entry {key} is corrupted: {reason}")
