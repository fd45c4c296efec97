"""Local cache of fetched template sources.

Each source version is materialized once into its own directory:

    {cache_dir}/{source_name}__{source_type}/{version}/
        _meta.json
        templates/...

An entry is fetched into a staging directory next to the entries, its
checksum and metadata written, and only then renamed into place. Readers
either see a complete entry or no entry at all. A refreshed entry replaces
the previous directory rather than modifying its files.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping
import dataclasses
from datetime import UTC, datetime, timedelta
import hashlib
import json
import logging
import os
from pathlib import Path
import re
import shutil
import tempfile
import uuid

import aiofiles
from mashumaro.exceptions import InvalidFieldValue, MissingField
from slugify import slugify

from flux_template.config import CacheConfig
from flux_template.exceptions import (
    CacheCorruptError,
    InputException,
    SourceException,
    SourceFetchError,
    SourceTimeoutError,
)
from flux_template.manifest import SourceType, TemplateSource

from .artifact import TEMPLATES_DIR, CacheEntry, FetchedArtifact, SourceResult, Status
from .fetcher import Deadline, Fetcher
from .git import GitFetcher
from .http import HttpFetcher
from .oci import OciFetcher

__all__ = [
    "SourceCache",
    "compute_checksum",
    "default_fetchers",
    "parse_ttl",
]

_LOGGER = logging.getLogger(__name__)

META_FILE = "_meta.json"
STAGING_PREFIX = ".staging-"
STALE_PREFIX = ".stale-"

TTL_RE = re.compile(r"^(\d+)(m|h|d)$")
TTL_UNITS = {"m": "minutes", "h": "hours", "d": "days"}

_DISALLOWED_CHARS = r"[^-a-zA-Z0-9_.]+"

CacheKey = tuple[str, SourceType, str]


def parse_ttl(ttl: str) -> timedelta:
    """Parse a duration such as `30m`, `1h` or `7d`."""
    if not (match := TTL_RE.match(ttl)):
        raise InputException(
            f"Invalid ttl '{ttl}': expected a number followed by m, h or d"
        )
    return timedelta(**{TTL_UNITS[match.group(2)]: int(match.group(1))})


def compute_checksum(path: Path) -> str:
    """Return a SHA-256 over the relative path and contents of every file."""
    digest = hashlib.sha256()
    for file in sorted(p for p in path.rglob("*") if p.is_file()):
        digest.update(file.relative_to(path).as_posix().encode("utf-8"))
        digest.update(b"\0")
        digest.update(file.read_bytes())
        digest.update(b"\0")
    return f"sha256:{digest.hexdigest()}"


def _path_component(value: str) -> str:
    """Return a filesystem safe directory name for a name or version."""
    slug = slugify(value, lowercase=False, regex_pattern=_DISALLOWED_CHARS)
    if slug == value and slug.strip("."):
        return slug
    # Keep distinct values distinct after slugify collapsed their characters
    hash_str = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{hash_str}" if slug.strip(".") else hash_str


def default_fetchers() -> dict[SourceType, Fetcher]:
    """Return a fetcher for each supported source type."""
    fetchers: list[Fetcher] = [GitFetcher(), HttpFetcher(), OciFetcher()]
    return {fetcher.source_type: fetcher for fetcher in fetchers}


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def _read_entry(path: Path) -> CacheEntry:
    """Read the metadata of the entry stored at `path`.

    Raises:
        FileNotFoundError: When there is no entry at the path.
        CacheCorruptError: When the entry exists but cannot be used.
    """
    async with aiofiles.open(path / META_FILE, encoding="utf-8") as meta_file:
        contents = await meta_file.read()
    try:
        entry = CacheEntry.from_dict(json.loads(contents))
    except (ValueError, TypeError, MissingField, InvalidFieldValue) as err:
        raise CacheCorruptError(
            path.name, f"invalid metadata in {path}: {err}"
        ) from err
    if not (path / TEMPLATES_DIR).is_dir():
        raise CacheCorruptError(entry.source_name, f"missing templates in {path}")
    return dataclasses.replace(entry, path=path)


async def _write_entry(path: Path, entry: CacheEntry) -> None:
    async with aiofiles.open(path / META_FILE, mode="w", encoding="utf-8") as meta_file:
        await meta_file.write(json.dumps(entry.to_dict(), indent=2, sort_keys=True))


def _discard_result(future: asyncio.Future[FetchedArtifact]) -> None:
    """Mark the outcome of an abandoned fetch as retrieved."""
    if not future.cancelled():
        future.exception()


def _promote(staging: Path, dest: Path) -> None:
    """Move a complete staging directory to its final location."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    stale: Path | None = None
    if dest.exists():
        stale = staging.with_name(f"{STALE_PREFIX}{uuid.uuid4().hex}")
        os.replace(dest, stale)
    os.replace(staging, dest)
    if stale is not None:
        shutil.rmtree(stale, ignore_errors=True)


class SourceCache:
    """Fetches template sources on demand and keeps them on local disk.

    At most one fetch runs at a time for a given source and version, and
    concurrent callers asking for the same entry share its result.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        fetchers: Mapping[SourceType, Fetcher] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize SourceCache."""
        self._config = config or CacheConfig()
        self._root = Path(self._config.cache_dir)
        self._fetchers = dict(fetchers) if fetchers is not None else default_fetchers()
        self._now = clock or _utcnow
        self._inflight: dict[CacheKey, asyncio.Task[CacheEntry]] = {}

    @property
    def root(self) -> Path:
        return self._root

    def entry_path(
        self, source_name: str, source_type: SourceType, version: str
    ) -> Path:
        """Return the directory holding an entry."""
        return (
            self._root
            / f"{_path_component(source_name)}__{source_type}"
            / _path_component(version)
        )

    async def get(
        self, source: TemplateSource, version: str | None = None
    ) -> CacheEntry | None:
        """Return the fresh entry for the source, or None on a miss.

        Expired entries and entries whose files no longer match the recorded
        checksum are treated as a miss.
        """
        version = version or source.version
        path = self.entry_path(source.name, source.source_type, version)
        try:
            entry = await _read_entry(path)
        except FileNotFoundError:
            _LOGGER.debug("Cache miss for %s@%s", source.name, version)
            return None
        except CacheCorruptError as err:
            _LOGGER.warning("Ignoring corrupt cache entry: %s", err)
            return None
        if entry.is_expired(self._now()):
            _LOGGER.debug("Cache entry for %s@%s expired", source.name, version)
            return None
        if entry.checksum:
            checksum = await asyncio.to_thread(compute_checksum, entry.templates_path)
            if checksum != entry.checksum:
                _LOGGER.warning(
                    "Cache entry for %s@%s does not match its checksum",
                    source.name,
                    version,
                )
                return None
        _LOGGER.debug("Cache hit for %s@%s", source.name, version)
        return entry

    async def get_or_fetch(
        self,
        source: TemplateSource,
        version: str | None = None,
        timeout: float | None = None,
    ) -> CacheEntry:
        """Return the entry for the source, fetching it on a miss.

        Args:
            source: The source to materialize
            version: The version to fetch, defaulting to the version the
                source declares
            timeout: Seconds before the fetch is abandoned, defaulting to the
                configured fetch timeout

        Raises:
            SourceException: A subclass describing why the fetch failed.
        """
        version = version or source.version
        key: CacheKey = (source.name, source.source_type, version)
        if (task := self._inflight.get(key)) is None:
            task = asyncio.create_task(self._get_or_fetch(source, version, timeout))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._fetch_done(key, done))
        else:
            _LOGGER.debug("Waiting on in-flight fetch of %s@%s", source.name, version)
        return await asyncio.shield(task)

    def _fetch_done(self, key: CacheKey, task: asyncio.Task[CacheEntry]) -> None:
        self._inflight.pop(key, None)
        if not task.cancelled():
            # Mark the error retrieved when every waiter was cancelled
            task.exception()

    async def _get_or_fetch(
        self, source: TemplateSource, version: str, timeout: float | None
    ) -> CacheEntry:
        if entry := await self.get(source, version):
            return entry
        ttl = parse_ttl(source.ttl or self._config.default_ttl)
        if (fetcher := self._fetchers.get(source.source_type)) is None:
            raise SourceException(
                source.name, f"no fetcher for source type {source.source_type}"
            )
        if timeout is None:
            timeout = self._config.fetch_timeout

        self._root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self._root))
        deadline = Deadline(timeout)
        fetch_task: asyncio.Future[FetchedArtifact] | None = None
        try:
            templates = staging / TEMPLATES_DIR
            templates.mkdir()
            _LOGGER.info(
                "Fetching %s source %s@%s", source.source_type, source.name, version
            )
            fetch_task = asyncio.ensure_future(
                fetcher.fetch(source, version, templates, deadline)
            )
            try:
                artifact = await asyncio.wait_for(asyncio.shield(fetch_task), timeout)
            except TimeoutError as err:
                raise SourceTimeoutError(source.name, timeout or 0) from err
            checksum = await asyncio.to_thread(compute_checksum, templates)
            fetched_at = self._now()
            entry = CacheEntry(
                source_name=source.name,
                source_type=source.source_type,
                version=version,
                fetched_at=fetched_at,
                expires_at=fetched_at + ttl if source.mutable else None,
                checksum=checksum,
                revision=artifact.revision,
            )
            await _write_entry(staging, entry)
            dest = self.entry_path(source.name, source.source_type, version)
            await asyncio.to_thread(_promote, staging, dest)
        finally:
            if fetch_task is not None and not fetch_task.done():
                await self._stop_fetch(source, fetch_task, deadline)
            if fetch_task is None or fetch_task.done():
                if staging.exists():
                    await asyncio.to_thread(shutil.rmtree, staging, True)
            else:
                _LOGGER.warning(
                    "Fetch of %s did not stop; leaving %s for prune",
                    source.name,
                    staging,
                )
        _LOGGER.info("Cached %s@%s at %s", source.name, version, dest)
        return dataclasses.replace(entry, path=dest)

    async def _stop_fetch(
        self,
        source: TemplateSource,
        fetch_task: asyncio.Future[FetchedArtifact],
        deadline: Deadline,
    ) -> None:
        """Cancel an unfinished fetch and wait for its worker thread to stop.

        The staging directory may only be removed once nothing writes into
        it, so the fetch is given `cancel_grace` seconds to notice the
        cancelled deadline.
        """
        deadline.cancel()
        fetch_task.add_done_callback(_discard_result)
        _LOGGER.debug("Waiting for the fetch of %s to stop", source.name)
        await asyncio.wait({fetch_task}, timeout=self._config.cancel_grace)

    async def fetch_all(
        self, sources: Iterable[TemplateSource], timeout: float | None = None
    ) -> list[SourceResult]:
        """Materialize independent sources in parallel.

        A failed or timed out source is reported in its result and does not
        prevent the others from completing.
        """
        sources = list(sources)
        outcomes = await asyncio.gather(
            *(self.get_or_fetch(source, timeout=timeout) for source in sources),
            return_exceptions=True,
        )
        results: list[SourceResult] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, SourceException):
                _LOGGER.warning("Failed to fetch source %s: %s", source.name, outcome)
                results.append(
                    SourceResult(source=source, status=Status.FAILED, error=outcome)
                )
            elif isinstance(outcome, Exception):
                _LOGGER.error(
                    "Unexpected error fetching source %s: %s",
                    source.name,
                    outcome,
                    exc_info=outcome,
                )
                error = SourceFetchError(source.name, f"unexpected error: {outcome}")
                error.__cause__ = outcome
                results.append(
                    SourceResult(source=source, status=Status.FAILED, error=error)
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(
                    SourceResult(source=source, status=Status.READY, entry=outcome)
                )
        return results

    def _entry_dirs(self) -> list[Path]:
        if not self._root.is_dir():
            return []
        return sorted(
            path
            for source_dir in self._root.iterdir()
            if source_dir.is_dir() and not source_dir.name.startswith(".")
            for path in source_dir.iterdir()
            if path.is_dir() and not path.name.startswith(".")
        )

    async def list_entries(self) -> list[CacheEntry]:
        """Return every readable entry in the cache, expired or not."""
        entries: list[CacheEntry] = []
        for path in self._entry_dirs():
            try:
                entries.append(await _read_entry(path))
            except (FileNotFoundError, CacheCorruptError) as err:
                _LOGGER.debug("Skipping unreadable cache entry %s: %s", path, err)
        return entries

    async def invalidate(
        self,
        source_name: str,
        source_type: SourceType | None = None,
        version: str | None = None,
    ) -> int:
        """Remove the entries of a source, optionally only one type or version.

        Returns the number of entries removed.
        """
        removed = 0
        for entry in await self.list_entries():
            if entry.source_name != source_name:
                continue
            if source_type is not None and entry.source_type != source_type:
                continue
            if version is not None and entry.version != version:
                continue
            _LOGGER.info("Invalidating cache entry %s", entry.path)
            await asyncio.to_thread(shutil.rmtree, entry.path, True)
            removed += 1
        return removed

    async def prune(self) -> list[Path]:
        """Remove expired and corrupt entries along with abandoned staging dirs.

        Returns the removed directories.
        """
        now = self._now()
        removed: list[Path] = []
        if self._root.is_dir():
            removed.extend(
                path
                for path in self._root.iterdir()
                if path.name.startswith((STAGING_PREFIX, STALE_PREFIX))
            )
        for path in self._entry_dirs():
            try:
                entry = await _read_entry(path)
            except (FileNotFoundError, CacheCorruptError) as err:
                _LOGGER.warning("Pruning corrupt cache entry %s: %s", path, err)
                removed.append(path)
                continue
            if entry.is_expired(now):
                removed.append(path)
        for path in removed:
            _LOGGER.info("Pruning %s", path)
            await asyncio.to_thread(shutil.rmtree, path, True)
        return removed
