"""Artifacts produced by fetching template sources."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from mashumaro import DataClassDictMixin

from flux_template.exceptions import SourceException
from flux_template.manifest import SourceType, TemplateSource

__all__ = [
    "CacheEntry",
    "FetchedArtifact",
    "SourceResult",
    "Status",
]

TEMPLATES_DIR = "templates"


@dataclass(frozen=True, kw_only=True)
class FetchedArtifact:
    """Returned by a fetcher once the templates are written to disk."""

    revision: str | None = None
    """The exact revision fetched, e.g. a commit sha or archive digest."""


@dataclass(frozen=True)
class CacheEntry(DataClassDictMixin):
    """A materialized copy of a template source at one version.

    The fields other than `path` are persisted as the entry's metadata file.
    """

    source_name: str
    source_type: SourceType
    version: str
    fetched_at: datetime
    expires_at: datetime | None = None
    """When the entry stops being fresh, or None if it never expires."""

    checksum: str | None = None
    """SHA-256 over the relative paths and contents of the template files."""

    revision: str | None = None

    path: Path = field(default=Path(), metadata={"serialize": "omit"})
    """Directory of the entry, set when the entry is read from disk."""

    @property
    def templates_path(self) -> Path:
        return self.path / TEMPLATES_DIR

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class Status(StrEnum):
    """Outcome of materializing a source."""

    READY = "Ready"
    FAILED = "Failed"


@dataclass
class SourceResult:
    """The entry or the error produced for one source of a batch fetch."""

    source: TemplateSource
    status: Status
    entry: CacheEntry | None = None
    error: SourceException | None = None

    def __str__(self) -> str:
        """Return a string representation of the result."""
        if self.error:
            return f"{self.source.name} {self.status}: {self.error}"
        return f"{self.source.name} {self.status}"
