"""Package index providers.

An index answers two read-only questions: which versions of a package exist,
and what a given version's descriptor text is. ``HttpIndex`` reads a
published manifest over HTTP, ``LocalIndex`` reads the same layout from
disk, and ``InMemoryIndex`` serves dictionaries (handy for tests and
embedding). All of them cache through ``TTLCache``.

Layout::

    <base>/manifest.json                  {"packages": {"lpeg": ["1.0.2-1", ...]}}
    <base>/<name>/<name>-<version>.toml   descriptor text
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from constants import Constants
from common.http_client import get_text
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from descriptor.models import Descriptor
from descriptor.parser import parse
from errors import SourceNotFound
from versioning.cache import TTLCache
from versioning.models import PackageVersion
from versioning.parser import normalize_name, parse_version

logger = logging.getLogger(__name__)


class PackageIndex(ABC):
    """Base class for index providers."""

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache if cache is not None else TTLCache(Constants.INDEX_CACHE_TTL_SEC)
        self._raw_versions: Dict[tuple, str] = {}
        self._lock = threading.Lock()

    @abstractmethod
    def fetch_versions(self, name: str) -> List[str]:
        """Return raw version strings for ``name``; empty when unknown."""

    @abstractmethod
    def fetch_descriptor_text(self, name: str, raw_version: str) -> str:
        """Return descriptor text for one version.

        Raises:
            SourceNotFound: the version is listed but its descriptor is absent.
        """

    def descriptor_base_dir(self, name: str) -> Optional[str]:
        """Directory relative ``source.path`` entries resolve against."""
        return None

    def available_versions(self, name: str) -> List[PackageVersion]:
        """Parsed versions of ``name``, highest first. Unparsable ones are skipped."""
        name = normalize_name(name)
        cache_key = f"versions:{name}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        parsed: List[PackageVersion] = []
        for raw in self.fetch_versions(name):
            try:
                version = parse_version(raw)
            except ValueError:
                logger.warning("Skipping unparsable version %r of %s", raw, name)
                continue
            with self._lock:
                self._raw_versions[(name, version)] = raw
            parsed.append(version)
        parsed.sort(reverse=True)
        if is_debug_enabled(logger):
            logger.debug(
                "Index versions",
                extra=extra_context(
                    event="index_versions",
                    component="index",
                    package=name,
                    count=len(parsed),
                )
            )
        self.cache.set(cache_key, parsed)
        return parsed

    def descriptor_text(self, name: str, version: PackageVersion) -> str:
        name = normalize_name(name)
        cache_key = f"text:{name}:{version}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        with self._lock:
            raw = self._raw_versions.get((name, version))
        text = self.fetch_descriptor_text(name, raw if raw is not None else str(version))
        self.cache.set(cache_key, text)
        return text

    def descriptor(self, name: str, version: PackageVersion) -> Descriptor:
        """Parsed descriptor for ``name`` at ``version`` (cached)."""
        name = normalize_name(name)
        cache_key = f"descriptor:{name}:{version}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        descriptor = parse(self.descriptor_text(name, version), base_dir=self.descriptor_base_dir(name))
        self.cache.set(cache_key, descriptor)
        return descriptor


def _versions_from_manifest(manifest: Dict[str, Any], name: str) -> List[str]:
    packages = manifest.get("packages", manifest)
    entry = packages.get(name) if isinstance(packages, dict) else None
    if isinstance(entry, dict):
        return [str(v) for v in entry.keys()]
    if isinstance(entry, list):
        return [str(v) for v in entry]
    return []


class HttpIndex(PackageIndex):
    """Index served over HTTP."""

    def __init__(self, base_url: Optional[str] = None, cache: Optional[TTLCache] = None):
        super().__init__(cache)
        base_url = base_url or Constants.INDEX_URL
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"

    def _manifest(self) -> Dict[str, Any]:
        cached = self.cache.get("manifest")
        if cached is not None:
            return cached
        url = self.base_url + Constants.INDEX_MANIFEST
        logger.info("Fetching index manifest from %s", safe_url(url))
        try:
            manifest = json.loads(get_text(url))
        except json.JSONDecodeError as exc:
            raise SourceNotFound(f"index manifest at {safe_url(url)} is not valid JSON: {exc}") from exc
        if not isinstance(manifest, dict):
            raise SourceNotFound(f"index manifest at {safe_url(url)} is not a JSON object")
        self.cache.set("manifest", manifest)
        return manifest

    def fetch_versions(self, name: str) -> List[str]:
        return _versions_from_manifest(self._manifest(), name)

    def fetch_descriptor_text(self, name: str, raw_version: str) -> str:
        url = f"{self.base_url}{name}/{name}-{raw_version}{Constants.DESCRIPTOR_SUFFIX}"
        return get_text(url)


class LocalIndex(PackageIndex):
    """Index stored in a local directory (mirror or development checkout)."""

    def __init__(self, root: str, cache: Optional[TTLCache] = None):
        super().__init__(cache)
        self.root = os.path.abspath(root)

    def descriptor_base_dir(self, name: str) -> Optional[str]:
        return os.path.join(self.root, name)

    def fetch_versions(self, name: str) -> List[str]:
        manifest_path = os.path.join(self.root, Constants.INDEX_MANIFEST)
        if os.path.isfile(manifest_path):
            with open(manifest_path, encoding="utf-8") as fh:
                return _versions_from_manifest(json.load(fh), name)

        package_dir = os.path.join(self.root, name)
        if not os.path.isdir(package_dir):
            return []
        prefix = f"{name}-"
        versions = []
        for filename in sorted(os.listdir(package_dir)):
            if filename.startswith(prefix) and filename.endswith(Constants.DESCRIPTOR_SUFFIX):
                versions.append(filename[len(prefix):-len(Constants.DESCRIPTOR_SUFFIX)])
        return versions

    def fetch_descriptor_text(self, name: str, raw_version: str) -> str:
        path = os.path.join(self.root, name, f"{name}-{raw_version}{Constants.DESCRIPTOR_SUFFIX}")
        try:
            with open(path, encoding="utf-8") as fh:
                return fh.read()
        except FileNotFoundError as exc:
            raise SourceNotFound(f"descriptor not found: {path}") from exc


class InMemoryIndex(PackageIndex):
    """Index backed by ``{name: {version: descriptor_text}}``."""

    def __init__(self, packages: Dict[str, Dict[str, str]], cache: Optional[TTLCache] = None):
        super().__init__(cache)
        self.packages = {normalize_name(k): dict(v) for k, v in packages.items()}

    def fetch_versions(self, name: str) -> List[str]:
        return list(self.packages.get(name, {}).keys())

    def fetch_descriptor_text(self, name: str, raw_version: str) -> str:
        try:
            return self.packages[name][raw_version]
        except KeyError as exc:
            raise SourceNotFound(f"no descriptor for {name} {raw_version}") from exc
