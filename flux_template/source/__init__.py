"""The template source module.

This module materializes template sources (git repositories, http archives
and OCI artifacts) into a local cache that the loader reads templates from.
"""

from .artifact import CacheEntry, FetchedArtifact, SourceResult, Status
from .cache import SourceCache, parse_ttl
from .fetcher import Deadline, Fetcher

__all__ = [
    "SourceCache",
    "CacheEntry",
    "FetchedArtifact",
    "SourceResult",
    "Status",
    "Deadline",
    "Fetcher",
    "parse_ttl",
]
