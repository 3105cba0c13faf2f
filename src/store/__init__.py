"""Content-addressed local store of built packages."""

from .keys import StoreKey
from .local import LocalStore, StoreEntry

__all__ = ["LocalStore", "StoreEntry", "StoreKey"]
