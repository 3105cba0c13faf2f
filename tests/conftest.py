"""Shared fixtures: descriptor text builders and in-memory indexes."""

import json
from typing import Dict, Iterable, Optional

import pytest

from registry.index import InMemoryIndex


def descriptor_text(
    name: str,
    version: str,
    deps: Iterable[str] = (),
    build_deps: Iterable[str] = (),
    test_deps: Iterable[str] = (),
    source: Optional[str] = None,
    build: Optional[str] = None,
    extra: str = "",
) -> str:
    """Render a TOML descriptor. ``source`` and ``build`` are raw TOML tables."""
    lines = [f'name = "{name}"', f'version = "{version}"']
    for key, values in (("dependencies", deps), ("build_dependencies", build_deps), ("test_dependencies", test_deps)):
        values = list(values)
        if values:
            lines.append(f"{key} = {json.dumps(values)}")
    if extra:
        lines.append(extra)
    lines.append("")
    lines.append(source or f'[source]\nurl = "https://example.invalid/{name}-{version}.tar.gz"')
    if build:
        lines.append("")
        lines.append(build)
    return "\n".join(lines) + "\n"


def make_index(packages: Dict[str, Dict[str, Iterable[str]]], **kwargs) -> InMemoryIndex:
    """Build an index from ``{name: {version: [runtime deps]}}``."""
    return InMemoryIndex({
        name: {version: descriptor_text(name, version, deps, **kwargs) for version, deps in versions.items()}
        for name, versions in packages.items()
    })


@pytest.fixture
def descriptor():
    """Descriptor text factory."""
    return descriptor_text


@pytest.fixture
def index_of():
    """Index factory taking ``{name: {version: [deps]}}``."""
    return make_index
