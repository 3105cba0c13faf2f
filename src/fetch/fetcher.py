"""Source fetcher.

Retrieves a package source into a destination directory and computes its
content hash. Work happens in a sibling staging directory that is renamed
onto ``dest_dir`` only after every check passed, so a failed fetch (network
error, integrity mismatch, corrupt archive) leaves nothing behind.
"""
from __future__ import annotations

import logging
import os
import posixpath
import shutil
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Optional

from constants import Constants
from common import integrity
from common.fs_utils import copy_file, copy_tree, make_temp_dir, remove_tree
from common.http_client import backoff_delay, download_to_file
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from descriptor.models import ArchiveSource, GitSource, LocalSource, SourceLocation
from errors import IntegrityMismatch, NetworkError, SourceFetchError, SourceNotFound

from . import archive, git

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchedSource:
    """A source tree on disk plus its content hash."""
    local_path: str
    content_hash: str
    source: SourceLocation
    revision: Optional[str] = None


def _verify(declared: Optional[str], actual: str) -> None:
    if declared is None:
        return
    try:
        ok = integrity.matches(declared, actual)
    except ValueError as exc:
        raise IntegrityMismatch(declared, actual) from exc
    if not ok:
        raise IntegrityMismatch(declared, actual)


def _download(url: str, dest_path: str) -> None:
    parts = urllib.parse.urlsplit(url)
    if parts.scheme == "file":
        local = urllib.request.url2pathname(parts.path)
        if not os.path.isfile(local):
            raise SourceNotFound(f"not found: {url}")
        shutil.copyfile(local, dest_path)
        return
    if parts.scheme not in ("http", "https"):
        raise SourceFetchError(f"unsupported URL scheme for {safe_url(url)}")
    download_to_file(url, dest_path)


def _fetch_archive(source: ArchiveSource, declared: Optional[str], staging: str) -> str:
    download_dir = make_temp_dir(os.path.dirname(staging), ".download-")
    try:
        filename = posixpath.basename(urllib.parse.urlsplit(source.url).path) or "source"
        downloaded = os.path.join(download_dir, filename)
        _download(source.url, downloaded)
        content_hash = integrity.hash_file(downloaded)
        # Verification happens before anything is extracted.
        _verify(declared, content_hash)
        fmt = archive.archive_format(source.url)
        if fmt is None:
            copy_file(downloaded, os.path.join(staging, filename))
        else:
            archive.extract(downloaded, staging, fmt)
        return content_hash
    finally:
        remove_tree(download_dir)


def _fetch_local(source: LocalSource, staging: str) -> str:
    path = os.path.abspath(os.path.expanduser(source.path))
    if os.path.isdir(path):
        copy_tree(path, staging)
        return integrity.hash_tree(staging)
    if os.path.isfile(path):
        target = os.path.join(staging, os.path.basename(path))
        fmt = archive.archive_format(path)
        if fmt is None:
            copy_file(path, target)
            return integrity.hash_tree(staging)
        archive.extract(path, staging, fmt)
        return integrity.hash_file(path)
    raise SourceNotFound(f"local source does not exist: {path}")


def _fetch_git(source: GitSource, staging: str) -> str:
    attempts = max(1, Constants.HTTP_RETRY_MAX)
    for attempt in range(attempts):
        if attempt:
            time.sleep(backoff_delay(attempt - 1))
            remove_tree(staging)
            os.makedirs(staging)
        try:
            return git.checkout(source.url, source.ref, staging)
        except NetworkError as exc:
            if attempt + 1 == attempts:
                raise
            logger.debug("git fetch attempt %d failed: %s", attempt + 1, exc)
    raise NetworkError(f"git fetch of {safe_url(source.url)} was not attempted")


def fetch(source: SourceLocation, declared_hash: Optional[str] = None, *, dest_dir: str) -> FetchedSource:
    """Fetch ``source`` into ``dest_dir``.

    Args:
        source: Where the package source lives.
        declared_hash: Expected content hash. Archives fall back to their own
            declared hash; for trees the value is compared with the tree hash.
        dest_dir: Destination; must not exist or be empty.

    Raises:
        NetworkError: transport failure after retries.
        SourceNotFound: the location does not exist.
        IntegrityMismatch: content differs from ``declared_hash``.
    """
    dest_dir = os.path.abspath(dest_dir)
    if os.path.isdir(dest_dir) and os.listdir(dest_dir):
        raise SourceFetchError(f"destination is not empty: {dest_dir}")
    parent = os.path.dirname(dest_dir)
    staging = make_temp_dir(parent, ".fetch-")
    revision = None

    with Timer() as t:
        try:
            if isinstance(source, ArchiveSource):
                declared = declared_hash or source.hash
                content_hash = _fetch_archive(source, declared, staging)
            elif isinstance(source, GitSource):
                revision = _fetch_git(source, staging)
                content_hash = integrity.hash_tree(staging)
                _verify(declared_hash, content_hash)
            elif isinstance(source, LocalSource):
                content_hash = _fetch_local(source, staging)
                _verify(declared_hash, content_hash)
            else:
                raise SourceFetchError(f"unsupported source location: {source!r}")

            if os.path.isdir(dest_dir):
                os.rmdir(dest_dir)
            os.rename(staging, dest_dir)
        except BaseException:
            remove_tree(staging)
            raise

    if is_debug_enabled(logger):
        logger.debug(
            "Fetched source",
            extra=extra_context(
                event="fetch",
                component="fetcher",
                kind=source.kind.value,
                outcome="success",
                duration_ms=t.duration_ms(),
                content_hash=content_hash,
            )
        )
    return FetchedSource(dest_dir, content_hash, source, revision)
