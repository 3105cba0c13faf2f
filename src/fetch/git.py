"""Version-control checkouts through the ``git`` executable."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import List, Optional

from common.fs_utils import remove_tree
from common.logging_utils import safe_url
from errors import NetworkError, SourceFetchError, SourceNotFound

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SEC = 600
_NOT_FOUND_MARKERS = (
    "not found",
    "does not exist",
    "couldn't find remote ref",
    "did not match any",
    "unknown revision",
    "does not appear to be a git repository",
)


def _git(args: List[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
    git = shutil.which("git")
    if git is None:
        raise SourceFetchError("git executable not found on PATH")
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
    try:
        return subprocess.run(
            [git, *args],
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SEC,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise NetworkError(f"git {args[0]} timed out after {exc.timeout}s") from exc


def _raise_for(result: subprocess.CompletedProcess, url: str) -> None:
    stderr = (result.stderr or "").strip()
    if any(marker in stderr.lower() for marker in _NOT_FOUND_MARKERS):
        raise SourceNotFound(f"{safe_url(url)}: {stderr}")
    raise NetworkError(f"git failed for {safe_url(url)} (exit {result.returncode}): {stderr}")


def checkout(url: str, ref: Optional[str], dest_dir: str) -> str:
    """Check ``ref`` of ``url`` out into ``dest_dir``; returns the commit id.

    A shallow fetch of the ref is tried first; servers that refuse fetching
    an arbitrary commit by id get a full fetch instead. ``.git`` is removed
    afterwards so the directory only holds sources.
    """
    os.makedirs(dest_dir, exist_ok=True)
    for args in (["init", "-q"], ["remote", "add", "origin", url]):
        result = _git(args, cwd=dest_dir)
        if result.returncode != 0:
            raise SourceFetchError(f"git {args[0]} failed: {result.stderr.strip()}")

    target = ref or "HEAD"
    result = _git(["fetch", "-q", "--depth", "1", "origin", target], cwd=dest_dir)
    if result.returncode == 0:
        result = _git(["checkout", "-q", "FETCH_HEAD"], cwd=dest_dir)
    else:
        logger.debug("Shallow fetch of %s@%s refused, fetching full history", safe_url(url), target)
        result = _git(["fetch", "-q", "--tags", "origin"], cwd=dest_dir)
        if result.returncode != 0:
            _raise_for(result, url)
        result = _git(["checkout", "-q", target if ref else "FETCH_HEAD"], cwd=dest_dir)
    if result.returncode != 0:
        _raise_for(result, url)

    commit = _git(["rev-parse", "HEAD"], cwd=dest_dir).stdout.strip()
    remove_tree(os.path.join(dest_dir, ".git"))
    logger.info("Checked out %s at %s", safe_url(url), commit[:12] or target)
    return commit
