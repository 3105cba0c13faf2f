"""Descriptor (package manifest) parser.

Descriptors are TOML documents. A minimal one::

    name = "lpeg"
    version = "1.1.0-2"

    [source]
    url = "https://example.org/lpeg-1.1.0.tar.gz"
    hash = "sha256-..."

    [build]
    backend = "native"
    [build.parameters.modules]
    lpeg = ["lpcap.c", "lpcode.c", "lpprint.c", "lptree.c", "lpvm.c"]

Unknown optional keys are ignored. Missing required keys raise
``ParseError`` naming the key and the line it should live on.
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from typing import Any, Dict, List, Optional

from common import integrity
from errors import ParseError
from versioning.models import DependencyKind
from versioning.parser import normalize_name, parse_dependency, parse_range, parse_version

from .models import (
    ANY_PLATFORM,
    ArchiveSource,
    BuildBackend,
    BuildSpec,
    DependencyConstraint,
    Descriptor,
    GitSource,
    LocalSource,
    PlatformPredicate,
    SourceLocation,
)

logger = logging.getLogger(__name__)

_TOML_LINE_RE = re.compile(r'at line (\d+)')
_GIT_SCHEMES = ("git://", "ssh://", "git@")
_KIND_KEYS = {
    "dependencies": DependencyKind.RUNTIME,
    "build_dependencies": DependencyKind.BUILD,
    "test_dependencies": DependencyKind.TEST,
}


class _Locator:
    """Maps keys and tables back to line numbers in the source text."""

    def __init__(self, text: str):
        self._lines = text.splitlines()

    def find(self, key: str, table: Optional[str] = None) -> int:
        key_re = re.compile(r'^\s*"?' + re.escape(key) + r'"?\s*=')
        table_re = re.compile(r'^\s*\[\[?\s*' + re.escape(table or key) + r'\s*\]\]?')
        in_table = table is None
        table_line = 0
        for number, line in enumerate(self._lines, start=1):
            stripped = line.strip()
            if stripped.startswith("["):
                if table_re.match(line):
                    if table is None:
                        return number
                    in_table, table_line = True, number
                    continue
                in_table = False
            elif in_table and key_re.match(line):
                return number
        return table_line or 1


def _toml_error_line(exc: tomllib.TOMLDecodeError) -> int:
    lineno = getattr(exc, "lineno", None)
    if isinstance(lineno, int):
        return lineno
    match = _TOML_LINE_RE.search(str(exc))
    return int(match.group(1)) if match else 1


def _require_str(data: Dict[str, Any], key: str, locator: _Locator, table: Optional[str] = None) -> str:
    dotted = f"{table}.{key}" if table else key
    value = data.get(key)
    if value is None:
        raise ParseError(locator.find(key, table), f"missing required field '{dotted}'")
    if not isinstance(value, str) or not value.strip():
        raise ParseError(locator.find(key, table), f"field '{dotted}' must be a non-empty string")
    return value.strip()


def _platforms(value: Any, line: int, field_name: str) -> PlatformPredicate:
    if value is None:
        return ANY_PLATFORM
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ParseError(line, f"field '{field_name}' must be a list of platform names")
    return PlatformPredicate.from_entries(value)


def _parse_source(data: Dict[str, Any], locator: _Locator, base_dir: Optional[str]) -> SourceLocation:
    source = data.get("source")
    if source is None:
        raise ParseError(locator.find("source"), "missing required field 'source'")
    if isinstance(source, str):
        source = {"url": source}
    if not isinstance(source, dict):
        raise ParseError(locator.find("source"), "field 'source' must be a table")

    path = source.get("path")
    if path is not None:
        if not isinstance(path, str) or not path.strip():
            raise ParseError(locator.find("path", "source"), "field 'source.path' must be a non-empty string")
        if base_dir and not os.path.isabs(path):
            path = os.path.normpath(os.path.join(base_dir, path))
        return LocalSource(path)

    url = _require_str(source, "url", locator, "source")
    ref = source.get("ref") or source.get("tag") or source.get("branch")
    if ref is not None and not isinstance(ref, str):
        raise ParseError(locator.find("ref", "source"), "field 'source.ref' must be a string")
    if url.startswith("git+"):
        return GitSource(url[len("git+"):], ref)
    if url.startswith(_GIT_SCHEMES) or url.endswith(".git") or ref:
        return GitSource(url, ref)

    declared = source.get("hash")
    if declared is not None:
        try:
            declared = integrity.normalize(str(declared))
        except ValueError as exc:
            raise ParseError(locator.find("hash", "source"), str(exc)) from exc
    return ArchiveSource(url, declared)


def _parse_dependency_entry(
    entry: Any, default_kind: DependencyKind, locator: _Locator, key: str
) -> DependencyConstraint:
    line = locator.find(key)
    if isinstance(entry, str):
        try:
            name, rng = parse_dependency(entry)
        except ValueError as exc:
            raise ParseError(line, str(exc)) from exc
        return DependencyConstraint(name, rng, default_kind)

    if not isinstance(entry, dict):
        raise ParseError(line, f"entries of '{key}' must be strings or tables")
    if "name" not in entry:
        raise ParseError(line, f"dependency in '{key}' is missing required field 'name'")
    try:
        name = normalize_name(str(entry["name"]))
        raw_range = entry.get("constraint", entry.get("version"))
        rng = parse_range(None if raw_range is None else str(raw_range))
    except ValueError as exc:
        raise ParseError(line, str(exc)) from exc
    kind = default_kind
    if "kind" in entry:
        try:
            kind = DependencyKind(str(entry["kind"]).lower())
        except ValueError as exc:
            raise ParseError(line, f"unknown dependency kind '{entry['kind']}'") from exc
    platforms = _platforms(entry.get("platforms"), line, f"{key}.platforms")
    return DependencyConstraint(name, rng, kind, platforms)


def _parse_dependencies(data: Dict[str, Any], locator: _Locator) -> List[DependencyConstraint]:
    constraints: List[DependencyConstraint] = []
    for key, kind in _KIND_KEYS.items():
        entries = data.get(key)
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise ParseError(locator.find(key), f"field '{key}' must be a list")
        constraints.extend(_parse_dependency_entry(e, kind, locator, key) for e in entries)
    return constraints


def _parse_build(data: Dict[str, Any], locator: _Locator) -> BuildSpec:
    build = data.get("build")
    if build is None:
        return BuildSpec(BuildBackend.NONE, {})
    if not isinstance(build, dict):
        raise ParseError(locator.find("build"), "field 'build' must be a table")

    raw_backend = str(build.get("backend", build.get("type", BuildBackend.BUILTIN.value))).lower()
    try:
        backend = BuildBackend(raw_backend)
    except ValueError as exc:
        raise ParseError(locator.find("backend", "build"), f"unknown build backend '{raw_backend}'") from exc

    parameters = {k: v for k, v in build.items() if k not in ("backend", "type", "parameters")}
    explicit = build.get("parameters") or {}
    if not isinstance(explicit, dict):
        raise ParseError(locator.find("parameters", "build"), "field 'build.parameters' must be a table")
    parameters.update(explicit)

    modules = parameters.get("modules")
    if modules is not None and not isinstance(modules, (dict, list)):
        raise ParseError(locator.find("modules", "build"), "field 'build.modules' must be a table or a list")
    install = parameters.get("install")
    if install is not None:
        if not isinstance(install, dict) or not all(isinstance(v, dict) for v in install.values()):
            raise ParseError(locator.find("install", "build"), "field 'build.install' must be a table of tables")
    return BuildSpec(backend, parameters)


def parse(text: str, base_dir: Optional[str] = None) -> Descriptor:
    """Parse descriptor text.

    Args:
        text: TOML descriptor contents.
        base_dir: Directory relative ``source.path`` values are resolved against.

    Raises:
        ParseError: malformed TOML, missing required fields or invalid values.
    """
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ParseError(_toml_error_line(exc), str(exc)) from exc

    locator = _Locator(text)
    name_text = _require_str(data, "name", locator)
    version_text = data.get("version")
    if version_text is None:
        raise ParseError(locator.find("version"), "missing required field 'version'")
    try:
        name = normalize_name(name_text)
        version = parse_version(str(version_text))
    except ValueError as exc:
        raise ParseError(locator.find("version"), str(exc)) from exc

    source = _parse_source(data, locator, base_dir)
    dependencies = _parse_dependencies(data, locator)
    build = _parse_build(data, locator)

    runtimes = data.get("supported_runtime_versions", [])
    if not isinstance(runtimes, list):
        raise ParseError(locator.find("supported_runtime_versions"), "field 'supported_runtime_versions' must be a list")
    platforms = _platforms(data.get("platforms"), locator.find("platforms"), "platforms")

    descriptor = Descriptor(
        name=name,
        version=version,
        source=source,
        dependencies=tuple(dependencies),
        build=build,
        supported_runtime_versions=tuple(str(v) for v in runtimes),
        platforms=platforms,
        summary=str(data.get("summary", "")),
        license=data.get("license"),
    )
    logger.debug("Parsed descriptor %s (%d dependencies)", descriptor.package_id, len(dependencies))
    return descriptor


def parse_file(path: str) -> Descriptor:
    """Read and parse a descriptor file; relative local paths resolve beside it."""
    with open(path, encoding="utf-8") as fh:
        return parse(fh.read(), base_dir=os.path.dirname(os.path.abspath(path)))
