"""Content hashing in Subresource-Integrity form (``sha256-<base64>``).

Archives are hashed over their bytes; directory trees over a canonical walk
so the same tree always yields the same value regardless of filesystem
ordering or timestamps.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os
import re
import stat
from typing import Iterable

from constants import Constants

ALGORITHM = "sha256"
_HEX_RE = re.compile(r'^[0-9a-fA-F]{64}$')
_CHUNK = 1024 * 1024


def _sri(digest: bytes) -> str:
    return f"{ALGORITHM}-{base64.b64encode(digest).decode('ascii')}"


def normalize(declared: str) -> str:
    """Normalize a declared hash to SRI form.

    Accepts ``sha256-<base64>``, ``sha256:<hex>`` and bare 64-char hex.

    Raises:
        ValueError: unsupported algorithm or malformed digest.
    """
    value = declared.strip()
    if value.startswith(f"{ALGORITHM}-"):
        try:
            digest = base64.b64decode(value[len(ALGORITHM) + 1:], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"malformed integrity value '{declared}'") from exc
        if len(digest) != hashlib.sha256().digest_size:
            raise ValueError(f"malformed integrity value '{declared}'")
        return _sri(digest)
    if value.startswith(f"{ALGORITHM}:"):
        value = value[len(ALGORITHM) + 1:]
    if _HEX_RE.match(value):
        return _sri(bytes.fromhex(value))
    raise ValueError(f"unsupported integrity value '{declared}' (expected {ALGORITHM})")


def matches(declared: str, actual: str) -> bool:
    """Compare a declared hash (any accepted form) with a computed SRI value."""
    return normalize(declared) == normalize(actual)


def hash_bytes(data: bytes) -> str:
    return _sri(hashlib.sha256(data).digest())


def hash_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return _sri(digest.digest())


def _iter_tree(root: str) -> Iterable[str]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in Constants.VCS_DIRS)
        for name in sorted(filenames):
            yield os.path.relpath(os.path.join(dirpath, name), root)


def hash_tree(root: str) -> str:
    """Hash a directory tree: relative path, executable bit, then contents."""
    digest = hashlib.sha256()
    for rel in sorted(_iter_tree(root), key=lambda p: p.replace(os.sep, "/")):
        full = os.path.join(root, rel)
        mode = os.lstat(full).st_mode
        digest.update(rel.replace(os.sep, "/").encode("utf-8") + b"\0")
        if stat.S_ISLNK(mode):
            digest.update(b"l" + os.readlink(full).encode("utf-8") + b"\0")
            continue
        digest.update(b"x" if mode & stat.S_IXUSR else b"-")
        digest.update(hash_file(full).encode("ascii") + b"\0")
    return _sri(digest.digest())
