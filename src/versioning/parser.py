"""Parsing utilities for package names, versions and version ranges."""

import re
from typing import Optional, Tuple

import semantic_version

from .models import ANY_RANGE, Comparator, Operator, PackageVersion, VersionRange

_REVISION_RE = re.compile(r'^(?P<base>.+?)-(?P<revision>\d+)$')
_NUMERIC_PREFIX_RE = re.compile(r'^\d+(?:\.\d+)*')
_CLAUSE_RE = re.compile(r'^(?P<op>~>|>=|<=|==|!=|=|>|<)?\s*(?P<version>\S+)$')
_NAME_RE = re.compile(r'^[a-z0-9][a-z0-9._+-]*$')
_DEPENDENCY_RE = re.compile(r'^\s*(?P<name>[A-Za-z0-9][A-Za-z0-9._+-]*)\s*(?P<range>.*)$')

_OPERATORS = {
    "=": Operator.EQ,
    "==": Operator.EQ,
    "!=": Operator.NE,
    ">=": Operator.GE,
    "<=": Operator.LE,
    ">": Operator.GT,
    "<": Operator.LT,
    "~>": Operator.COMPATIBLE,
}


def normalize_name(name: str) -> str:
    """Case-normalize a package name.

    Raises:
        ValueError: the name contains characters outside ``[a-z0-9._+-]``.
    """
    normalized = name.strip().lower()
    if not _NAME_RE.match(normalized):
        raise ValueError(f"invalid package name '{name}'")
    return normalized


def _parse_semver(base: str) -> Tuple[semantic_version.Version, int]:
    text = base.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    prefix = _NUMERIC_PREFIX_RE.match(text)
    if not prefix:
        raise ValueError(f"invalid version '{base}'")
    precision = len(prefix.group(0).split('.'))
    try:
        return semantic_version.Version.coerce(text), precision
    except ValueError as exc:
        raise ValueError(f"invalid version '{base}': {exc}") from exc


def parse_version(text: str) -> PackageVersion:
    """Parse ``<semver>[-<revision>]`` into a PackageVersion.

    Missing minor/patch components are coerced to zero, so ``1.2-1`` is
    ``1.2.0`` revision 1.
    """
    text = text.strip()
    if not text:
        raise ValueError("empty version")
    match = _REVISION_RE.match(text)
    if match:
        try:
            semver, precision = _parse_semver(match.group('base'))
            return PackageVersion(semver, int(match.group('revision')), precision)
        except ValueError:
            pass  # the suffix belongs to a pre-release tag such as "1.0.0-rc-1"
    semver, precision = _parse_semver(text)
    return PackageVersion(semver, None, precision)


def parse_range(text: Optional[str]) -> VersionRange:
    """Parse a comma-separated comparator list such as ``>= 1.0, < 2.0``.

    A bare version means an exact match. An empty string means any version.
    """
    if text is None or not text.strip() or text.strip() == "*":
        return ANY_RANGE
    comparators = []
    for clause in text.split(','):
        clause = clause.strip()
        if not clause:
            raise ValueError(f"empty clause in constraint '{text}'")
        match = _CLAUSE_RE.match(clause)
        if not match:
            raise ValueError(f"invalid constraint clause '{clause}'")
        operator = _OPERATORS[match.group('op') or "=="]
        comparators.append(Comparator(operator, parse_version(match.group('version'))))
    return VersionRange(tuple(comparators))


def parse_dependency(text: str) -> Tuple[str, VersionRange]:
    """Split ``name <range>`` (for example ``lpeg ~> 1.0``) into its parts."""
    match = _DEPENDENCY_RE.match(text)
    if not match:
        raise ValueError(f"invalid dependency '{text}'")
    return normalize_name(match.group('name')), parse_range(match.group('range'))
