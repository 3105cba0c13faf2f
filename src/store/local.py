"""Content-addressed local store.

Layout under ``root``::

    <key>/                      published entry (immutable)
    <key>/.rockyard-entry.json  entry record
    .locks/<key>.lock           per-key advisory lock (fcntl.flock)
    .tmp/<key>.<random>/        in-progress build output
    .tmp/<key>.retired-<random>/ entry being deleted

An entry becomes visible only through an ``os.rename`` of a finished
temporary directory and leaves the same way, so readers never observe a
partial entry. Builds for one key are serialized by the key lock across
threads and processes; a requester that waited re-checks for the entry
before building.
"""
from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from constants import Constants
from common.fs_utils import atomic_write_text, make_temp_dir, remove_tree
from common.logging_utils import extra_context, is_debug_enabled, Timer
from errors import StoreCorrupted, StoreLockTimeout

from builder.models import BuildArtifact

from .keys import StoreKey

logger = logging.getLogger(__name__)

BuildFn = Callable[[str], BuildArtifact]


@dataclass(frozen=True)
class StoreEntry:
    """A published store entry."""
    key: str
    path: str
    name: Optional[str] = None
    version: Optional[str] = None
    source_hash: Optional[str] = None
    backend: Optional[str] = None
    build_config: Dict[str, Any] = field(default_factory=dict)
    files: List[str] = field(default_factory=list)
    modules: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "version": self.version,
            "source_hash": self.source_hash,
            "backend": self.backend,
            "build_config": self.build_config,
            "files": list(self.files),
            "modules": dict(self.modules),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, path: str, data: Dict[str, Any]) -> "StoreEntry":
        return cls(
            key=data["key"],
            path=path,
            name=data.get("name"),
            version=data.get("version"),
            source_hash=data.get("source_hash"),
            backend=data.get("backend"),
            build_config=dict(data.get("build_config") or {}),
            files=list(data.get("files") or []),
            modules=dict(data.get("modules") or {}),
            created_at=data.get("created_at"),
        )


class LocalStore:
    """Immutable, content-addressed store of build artifacts."""

    def __init__(
        self,
        root: str,
        *,
        lock_timeout: Optional[float] = None,
        recover: bool = True,
    ) -> None:
        self.root = os.path.abspath(os.path.expanduser(root))
        self.lock_timeout = Constants.STORE_LOCK_TIMEOUT_SEC if lock_timeout is None else lock_timeout
        self._lock_dir = os.path.join(self.root, Constants.STORE_LOCK_DIR)
        self._tmp_dir = os.path.join(self.root, Constants.STORE_TMP_DIR)
        os.makedirs(self._lock_dir, exist_ok=True)
        os.makedirs(self._tmp_dir, exist_ok=True)
        if recover:
            self.recover()

    def entry_path(self, key: Union[StoreKey, str]) -> str:
        return os.path.join(self.root, str(key))

    def _lock_path(self, key: str) -> str:
        return os.path.join(self._lock_dir, f"{key}.lock")

    # ----- locking -----

    @contextmanager
    def _locked(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the key lock.

        Lock files may be unlinked by whoever holds them, so a lock only
        counts once the locked file is still the one at ``lock_path``.
        """
        timeout = self.lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        lock_path = self._lock_path(key)
        while True:
            handle = open(lock_path, "a+", encoding="utf-8")  # pylint: disable=consider-using-with
            try:
                self._acquire(handle, key, timeout, deadline)
            except BaseException:
                handle.close()
                raise
            if _is_current(handle, lock_path):
                break
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()

    @staticmethod
    def _acquire(handle, key: str, timeout: float, deadline: float) -> None:
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                    raise
                if time.monotonic() >= deadline:
                    raise StoreLockTimeout(key, timeout) from exc
                time.sleep(Constants.STORE_LOCK_POLL_SEC)

    def _drop_lock_file(self, key: str) -> None:
        """Unlink the lock file of ``key``; the caller holds its lock."""
        try:
            os.unlink(self._lock_path(key))
        except FileNotFoundError:
            pass

    # ----- reading -----

    def _read_entry(self, key: str) -> Optional[StoreEntry]:
        """Entry for ``key``; None if absent, StoreCorrupted if unreadable."""
        path = self.entry_path(key)
        if not os.path.isdir(path):
            return None
        meta_path = os.path.join(path, Constants.STORE_METADATA_FILE)
        try:
            with open(meta_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError as exc:
            raise StoreCorrupted(key, "entry record missing") from exc
        except (OSError, ValueError) as exc:
            raise StoreCorrupted(key, f"entry record unreadable: {exc}") from exc
        if not isinstance(data, dict) or data.get("key") != key:
            raise StoreCorrupted(key, "entry record does not match its key")
        entry = StoreEntry.from_dict(path, data)
        for relative in entry.files:
            if not os.path.lexists(os.path.join(path, relative)):
                raise StoreCorrupted(key, f"file missing from entry: {relative}")
        return entry

    def get(self, key: Union[StoreKey, str]) -> Optional[StoreEntry]:
        """Published entry for ``key``, or None (absent or corrupted)."""
        try:
            return self._read_entry(str(key))
        except StoreCorrupted as exc:
            logger.warning("%s", exc)
            return None

    def contains(self, key: Union[StoreKey, str]) -> bool:
        return self.get(key) is not None

    def _entry_keys(self) -> List[str]:
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []
        return sorted(
            n for n in names
            if not n.startswith(".") and os.path.isdir(os.path.join(self.root, n))
        )

    def list(self) -> List[StoreEntry]:
        """All readable entries, sorted by key."""
        entries = []
        for key in self._entry_keys():
            entry = self.get(key)
            if entry is not None:
                entries.append(entry)
        return entries

    # ----- writing -----

    def _retire(self, key: str) -> None:
        """Move a published entry out of sight, then delete it.

        The rename makes the key path disappear in one step, so no reader
        sees a partly deleted entry. The caller holds the key lock.
        """
        path = self.entry_path(key)
        if not os.path.lexists(path):
            return
        graveyard = os.path.join(self._tmp_dir, f"{key}.retired-{uuid.uuid4().hex}")
        os.rename(path, graveyard)
        remove_tree(graveyard)

    def _publish(self, key: Union[StoreKey, str], build_fn: BuildFn, *, replace: bool = False) -> None:
        digest = str(key)
        tmp = make_temp_dir(self._tmp_dir, f"{digest}.")
        try:
            artifact = build_fn(tmp)
            record: Dict[str, Any] = {"key": digest}
            if isinstance(key, StoreKey):
                canonical = key.canonical()
                record.update(
                    name=canonical["name"],
                    version=canonical["version"],
                    source_hash=canonical["source_hash"],
                    build_config=canonical["build_config"],
                )
            record.update(
                backend=artifact.backend.value,
                files=list(artifact.files),
                modules=dict(artifact.modules),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            atomic_write_text(
                os.path.join(tmp, Constants.STORE_METADATA_FILE),
                json.dumps(record, indent=2, sort_keys=True) + "\n",
            )
            if replace:
                self._retire(digest)
            os.rename(tmp, self.entry_path(digest))
        except BaseException:
            remove_tree(tmp)
            raise

    def get_or_build(self, key: Union[StoreKey, str], build_fn: BuildFn, *, force: bool = False) -> StoreEntry:
        """Return the entry for ``key``, running ``build_fn`` at most once.

        ``build_fn`` receives an empty output directory and returns the
        :class:`BuildArtifact` it produced there. If it raises, nothing is
        published and the error propagates. A corrupted entry is invalidated
        and rebuilt once; if the rebuild is unreadable too, StoreCorrupted
        is raised. With ``force`` a fresh build replaces an existing entry
        once it succeeds; a failed forced build keeps the old entry.
        """
        digest = str(key)
        if not force:
            try:
                entry = self._read_entry(digest)
                if entry is not None:
                    return entry
            except StoreCorrupted:
                pass

        with self._locked(digest):
            entry = None
            if force:
                logger.info("Forcing rebuild of store entry %s", digest[:12])
            else:
                try:
                    entry = self._read_entry(digest)
                except StoreCorrupted as exc:
                    logger.warning("Invalidating corrupted store entry: %s", exc)
                    self._retire(digest)
            if entry is not None:
                return entry

            with Timer() as t:
                self._publish(key, build_fn, replace=force)
            try:
                entry = self._read_entry(digest)
            except StoreCorrupted as exc:
                logger.warning("Rebuilding store entry after unreadable publish: %s", exc)
                self._retire(digest)
                self._publish(key, build_fn)
                entry = self._read_entry(digest)
            if entry is None:
                raise StoreCorrupted(digest, "entry vanished after publish")

        if is_debug_enabled(logger):
            logger.debug(
                "Store entry published",
                extra=extra_context(
                    event="store_publish",
                    component="store",
                    key=digest,
                    package=entry.name,
                    outcome="success",
                    duration_ms=t.duration_ms(),
                )
            )
        logger.info("Stored %s %s as %s", entry.name or "entry", entry.version or "", digest[:12])
        return entry

    # ----- maintenance -----

    def prune(self, referenced_keys: Iterable[Union[StoreKey, str]]) -> int:
        """Delete entries whose key is not referenced; returns how many.

        Entries whose lock is held (being read or rebuilt) are skipped.
        """
        keep = {str(k) for k in referenced_keys}
        removed = 0
        for key in self._entry_keys():
            if key in keep:
                continue
            try:
                with self._locked(key, timeout=0):
                    self._retire(key)
                    self._drop_lock_file(key)
            except StoreLockTimeout:
                logger.debug("Skipping busy store entry %s", key)
                continue
            removed += 1
            logger.info("Pruned store entry %s", key[:12])
        return removed

    def recover(self) -> int:
        """Remove leftovers of interrupted runs.

        Stray temporary build directories are removed, and so are lock
        files of keys without a published entry. Either is only touched
        while its key lock is free, so work in progress elsewhere is left
        alone. Returns the number of temporary directories removed.
        """
        try:
            names = os.listdir(self._tmp_dir)
        except FileNotFoundError:
            names = []
        removed = 0
        for name in names:
            key = name.split(".", 1)[0]
            try:
                with self._locked(key, timeout=0):
                    remove_tree(os.path.join(self._tmp_dir, name))
            except StoreLockTimeout:
                continue
            removed += 1
        if removed:
            logger.info("Removed %d stray temporary store directories", removed)

        try:
            lock_names = os.listdir(self._lock_dir)
        except FileNotFoundError:
            lock_names = []
        for name in lock_names:
            if not name.endswith(".lock"):
                continue
            key = name[:-len(".lock")]
            if os.path.isdir(self.entry_path(key)):
                continue
            try:
                with self._locked(key, timeout=0):
                    if not os.path.isdir(self.entry_path(key)):
                        self._drop_lock_file(key)
            except StoreLockTimeout:
                continue
        return removed


def _is_current(handle, path: str) -> bool:
    """True when ``handle`` still refers to the file at ``path``."""
    try:
        on_disk = os.stat(path)
    except FileNotFoundError:
        return False
    held = os.fstat(handle.fileno())
    return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)
