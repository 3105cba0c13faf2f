"""Filesystem helpers: atomic writes, tree copies and cleanup."""
from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile

from constants import Constants

logger = logging.getLogger(__name__)


def atomic_write_text(path: str, content: str) -> None:
    """Write ``content`` to ``path`` atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so readers see either the old or the new
    file and never a partial one.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _on_rm_error(func, path, exc):  # pylint: disable=unused-argument
    # Read-only files (git objects, extracted archives) block rmtree.
    os.chmod(path, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
    func(path)


def remove_tree(path: str) -> None:
    """Remove a directory tree (or file) if it exists."""
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path, onexc=_on_rm_error)


def copy_tree(src: str, dst: str) -> None:
    """Copy ``src`` into ``dst`` (real copies, VCS metadata skipped)."""
    shutil.copytree(
        src,
        dst,
        symlinks=True,
        ignore=shutil.ignore_patterns(*Constants.VCS_DIRS),
        dirs_exist_ok=True,
    )


def copy_file(src: str, dst: str) -> None:
    """Copy one file, creating parent directories and keeping its mode."""
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    shutil.copy2(src, dst)


def make_temp_dir(parent: str, prefix: str) -> str:
    """Create a fresh private directory under ``parent``."""
    os.makedirs(parent, exist_ok=True)
    return tempfile.mkdtemp(prefix=prefix, dir=parent)
