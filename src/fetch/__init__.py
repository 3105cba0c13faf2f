"""Source fetching: VCS checkouts, archive downloads and local copies."""

from .fetcher import FetchedSource, fetch

__all__ = ["FetchedSource", "fetch"]
