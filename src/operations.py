"""Collaborator operations: resolve and lock, fetch and build, prune.

These compose the components into the flows a command surface needs:

- :func:`resolve_and_lock` resolves root constraints and writes a lockfile.
- :func:`fetch_and_build_all` installs every locked package into the store.
- :func:`prune` drops store entries no lockfile references.
"""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Optional, Tuple, Union

from config import Settings
from common import integrity
from common.logging_utils import extra_context, is_debug_enabled, Timer
from descriptor.models import DependencyConstraint
from fetch import fetch
from lockfile import LockedPackage, Lockfile
from registry.index import PackageIndex
from scheduler import InstallScheduler
from versioning.models import DependencyKind, PackageId
from versioning.parser import parse_dependency, parse_version
from versioning.resolver import ResolveOptions, resolve

from builder import BuildConfig, CancelToken, build
from store import LocalStore, StoreEntry, StoreKey

logger = logging.getLogger(__name__)

NodeKey = Tuple[DependencyKind, str]


def _as_constraint(item: Union[DependencyConstraint, str]) -> DependencyConstraint:
    if isinstance(item, DependencyConstraint):
        return item
    name, version_range = parse_dependency(item)
    return DependencyConstraint(name, version_range)


def resolve_and_lock(
    root_constraints: Iterable[Union[DependencyConstraint, str]],
    index: PackageIndex,
    existing_lockfile: Optional[Lockfile] = None,
    *,
    options: Optional[ResolveOptions] = None,
    settings: Optional[Settings] = None,
    lockfile_path: Optional[str] = None,
) -> Lockfile:
    """Resolve ``root_constraints`` and return (and optionally write) the lockfile.

    Args:
        root_constraints: Constraints or ``"name range"`` strings (runtime).
        index: Package index to resolve against.
        existing_lockfile: Previous lockfile; its pins are preferred and its
            content hashes carried over for unchanged entries.
        options: Runtime/platform target and upgrade policy. When omitted, taken
            from ``settings`` if given.
        settings: Configuration used when ``options`` is not given.
        lockfile_path: When given, the lockfile is written there atomically.

    Returns:
        Lockfile: Snapshot of the resolution graph.
    """
    constraints = [_as_constraint(c) for c in root_constraints]
    if options is None and settings is not None:
        options = settings.resolve_options()
    with Timer() as t:
        graph = resolve(constraints, index, lockfile=existing_lockfile, options=options)
    lockfile = Lockfile.from_graph(graph, previous=existing_lockfile)
    if lockfile_path:
        lockfile.save(lockfile_path)
        logger.info("Wrote lockfile %s", lockfile_path)
    if is_debug_enabled(logger):
        logger.debug(
            "Resolve and lock finished",
            extra=extra_context(
                event="resolve",
                component="operations",
                roots=len(constraints),
                outcome="success",
                duration_ms=t.duration_ms(),
            )
        )
    return lockfile


@dataclass
class InstallResult:
    """Per-node outcome of :func:`fetch_and_build_all`.

    ``entries`` holds the store entries that are present; ``failures`` the
    errors of nodes that failed; ``skipped`` the nodes that never ran, with
    the reason. Partial results are normal when something failed.
    """
    lockfile: Lockfile
    entries: Dict[NodeKey, StoreEntry] = field(default_factory=dict)
    failures: Dict[NodeKey, BaseException] = field(default_factory=dict)
    skipped: Dict[NodeKey, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.skipped and not self.cancelled

    def runtime(self) -> Dict[str, StoreEntry]:
        """Store entries of the runtime section by package name."""
        return {name: entry for (kind, name), entry in self.entries.items() if kind is DependencyKind.RUNTIME}


def _prerequisites(lockfile: Lockfile) -> Dict[Hashable, List[Hashable]]:
    """Each node waits for its runtime dependencies in the same section and its build tools."""
    nodes: Dict[Hashable, List[Hashable]] = {}
    build_section = lockfile.section(DependencyKind.BUILD)
    for kind, locked in lockfile.entries():
        section = lockfile.section(kind)
        prereqs: List[Hashable] = [(kind, dep) for dep in locked.dependencies if dep in section]
        prereqs += [(DependencyKind.BUILD, dep) for dep in locked.build_dependencies if dep in build_section]
        nodes[(kind, locked.name)] = prereqs
    return nodes


class _Installer:
    """Install work for one node, run on scheduler threads."""

    def __init__(self, lockfile: Lockfile, build_config: BuildConfig, index: PackageIndex,
                 store: LocalStore, scheduler: InstallScheduler, force: bool = False) -> None:
        self.lockfile = lockfile
        self.build_config = build_config
        self.index = index
        self.store = store
        self.scheduler = scheduler
        self.force = force
        self.new_hashes: Dict[NodeKey, str] = {}
        self._lock = threading.Lock()

    def _stored(self, package_id: PackageId, locked: LockedPackage) -> Optional[StoreEntry]:
        if not locked.content_hash:
            return None
        try:
            locked_hash = integrity.normalize(locked.content_hash)
        except ValueError:
            # Left to the fetcher, which reports it as an integrity mismatch.
            return None
        return self.store.get(StoreKey(package_id, locked_hash, self.build_config))

    def __call__(self, node: NodeKey) -> StoreEntry:
        kind, name = node
        locked: LockedPackage = self.lockfile.section(kind)[name]
        version = parse_version(locked.version)
        package_id = PackageId(name, version)

        entry = None if self.force else self._stored(package_id, locked)
        if entry is not None:
            logger.debug("Store hit for %s", package_id)
            return entry

        descriptor = self.index.descriptor(name, version)
        with tempfile.TemporaryDirectory(prefix=f"rockyard-fetch-{name}-") as scratch:
            with self.scheduler.fetch_slot():
                fetched = fetch(locked.source, locked.content_hash, dest_dir=os.path.join(scratch, "src"))
            if not locked.content_hash:
                with self._lock:
                    self.new_hashes[node] = fetched.content_hash
            key = StoreKey(package_id, fetched.content_hash, self.build_config)
            cancel = self.scheduler.cancel
            with self.scheduler.build_slot():
                return self.store.get_or_build(
                    key,
                    lambda out: build(descriptor, fetched, self.build_config, out, cancel=cancel),
                    force=self.force,
                )


def fetch_and_build_all(
    lockfile: Lockfile,
    build_config: Optional[BuildConfig] = None,
    index: Optional[PackageIndex] = None,
    store: Optional[LocalStore] = None,
    *,
    settings: Optional[Settings] = None,
    force: bool = False,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
    lockfile_path: Optional[str] = None,
) -> InstallResult:
    """Fetch, build and store every package of ``lockfile``.

    Nodes already in the store under their locked content hash are not
    fetched again. Newly learned content hashes are recorded in the returned
    lockfile, which is written to ``lockfile_path`` when given. With ``force``
    every package is fetched and rebuilt, replacing its store entry.

    ``build_config``, ``index`` and ``store`` default to the ones ``settings``
    describes.
    """
    settings = settings or Settings()
    build_config = build_config or settings.build_config()
    if index is None:
        index = settings.open_index()
    store = store or settings.open_store()
    scheduler = InstallScheduler(
        fetch_concurrency=settings.fetch_concurrency,
        build_concurrency=settings.build_concurrency,
        cancel=cancel,
        timeout=timeout,
    )
    installer = _Installer(lockfile, build_config, index, store, scheduler, force=force)
    with Timer() as t:
        outcome = scheduler.run(_prerequisites(lockfile), installer)

    updated = lockfile
    for (kind, name), content_hash in sorted(installer.new_hashes.items(), key=str):
        updated = updated.with_content_hash(kind, name, content_hash)
    if lockfile_path and installer.new_hashes:
        updated.save(lockfile_path)

    result = InstallResult(
        lockfile=updated,
        entries=dict(outcome.results),
        failures=dict(outcome.failures),
        skipped=dict(outcome.skipped),
        cancelled=outcome.cancelled,
    )
    logger.info(
        "Installed %d packages (%d failed, %d skipped) in %d ms",
        len(result.entries), len(result.failures), len(result.skipped), t.duration_ms(),
    )
    return result


def prune(lockfiles: Iterable[Lockfile], store: LocalStore) -> int:
    """Remove store entries not referenced by any of ``lockfiles``.

    An entry is referenced when its package name and version match a locked
    package and, if the lockfile records one, its source content hash too.
    Entries built for any build configuration count.
    """
    pinned: Dict[Tuple[str, str], set] = {}
    for lockfile in lockfiles:
        for _, locked in lockfile.entries():
            pinned.setdefault((locked.name, locked.version), set()).add(locked.content_hash)

    referenced = []
    for entry in store.list():
        hashes = pinned.get((entry.name or "", entry.version or ""))
        if hashes is None:
            continue
        if None in hashes or entry.source_hash in hashes:
            referenced.append(entry.key)
    removed = store.prune(referenced)
    logger.info("Pruned %d store entries", removed)
    return removed


__all__ = [
    "InstallResult",
    "fetch_and_build_all",
    "prune",
    "resolve_and_lock",
]
