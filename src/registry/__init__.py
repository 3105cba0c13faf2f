"""Package index providers."""

from .index import HttpIndex, InMemoryIndex, LocalIndex, PackageIndex

__all__ = ["HttpIndex", "InMemoryIndex", "LocalIndex", "PackageIndex"]
