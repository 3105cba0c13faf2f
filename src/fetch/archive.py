"""Archive detection, safe extraction and single-root hoisting."""
from __future__ import annotations

import logging
import os
import shutil
import tarfile
import urllib.parse
import zipfile
from typing import Optional

from constants import Constants
from errors import SourceFetchError

logger = logging.getLogger(__name__)

_TAR_MODES = {
    ".tar": "r:",
    ".tar.gz": "r:gz",
    ".tgz": "r:gz",
    ".tar.bz2": "r:bz2",
    ".tbz2": "r:bz2",
    ".tar.xz": "r:xz",
    ".txz": "r:xz",
}


def archive_format(url_or_path: str) -> Optional[str]:
    """Return the archive suffix (``.zip``, ``.tar.gz``...) or None."""
    path = urllib.parse.urlsplit(url_or_path).path or url_or_path
    lowered = path.lower()
    for suffix in sorted(Constants.ARCHIVE_SUFFIXES, key=len, reverse=True):
        if lowered.endswith(suffix):
            return suffix
    return None


def _check_member(dest_dir: str, name: str) -> str:
    target = os.path.realpath(os.path.join(dest_dir, name))
    root = os.path.realpath(dest_dir)
    if os.path.isabs(name) or not (target == root or target.startswith(root + os.sep)):
        raise SourceFetchError(f"archive member escapes destination: {name}")
    return target


def _extract_zip(archive_path: str, dest_dir: str) -> None:
    with zipfile.ZipFile(archive_path) as zf:
        for info in zf.infolist():
            target = _check_member(dest_dir, info.filename)
            if info.is_dir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with zf.open(info) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(target, mode)


def _extract_tar(archive_path: str, dest_dir: str, mode: str) -> None:
    with tarfile.open(archive_path, mode) as tf:
        for member in tf.getmembers():
            _check_member(dest_dir, member.name)
        tf.extractall(dest_dir, filter="data")


def extract(archive_path: str, dest_dir: str, fmt: str) -> None:
    """Extract ``archive_path`` into ``dest_dir`` and hoist a single root directory.

    Raises:
        SourceFetchError: corrupt archive or a member outside ``dest_dir``.
    """
    os.makedirs(dest_dir, exist_ok=True)
    try:
        if fmt == ".zip":
            _extract_zip(archive_path, dest_dir)
        else:
            _extract_tar(archive_path, dest_dir, _TAR_MODES[fmt])
    except (zipfile.BadZipFile, tarfile.TarError, EOFError) as exc:
        raise SourceFetchError(f"cannot extract {os.path.basename(archive_path)}: {exc}") from exc
    hoist_single_directory(dest_dir)


def hoist_single_directory(dest_dir: str) -> bool:
    """Move the children of a lone top-level directory up into ``dest_dir``."""
    entries = os.listdir(dest_dir)
    if len(entries) != 1:
        return False
    only = os.path.join(dest_dir, entries[0])
    if not os.path.isdir(only) or os.path.islink(only):
        return False
    # Rename first so a child with the same name as the root cannot collide.
    staging = os.path.join(dest_dir, ".hoist-" + entries[0])
    os.rename(only, staging)
    for child in os.listdir(staging):
        os.rename(os.path.join(staging, child), os.path.join(dest_dir, child))
    os.rmdir(staging)
    logger.debug("Hoisted single top-level directory %s", entries[0])
    return True
