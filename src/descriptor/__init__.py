"""Package descriptor model and parser."""

from .models import (
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
from .parser import parse, parse_file

__all__ = [
    "ArchiveSource",
    "BuildBackend",
    "BuildSpec",
    "DependencyConstraint",
    "Descriptor",
    "GitSource",
    "LocalSource",
    "PlatformPredicate",
    "SourceLocation",
    "parse",
    "parse_file",
]
