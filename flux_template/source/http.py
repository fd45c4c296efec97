"""Fetch template sources published as archives over http."""

import asyncio
import hashlib
import logging
from pathlib import Path
import tempfile
from urllib.parse import urlparse

import requests

from flux_template.exceptions import (
    SourceAuthError,
    SourceException,
    SourceFetchError,
    SourceNotFoundError,
)
from flux_template.manifest import HttpSource, SourceType, TemplateSource

from .archive import extract_archive
from .artifact import FetchedArtifact
from .fetcher import Deadline, Fetcher

__all__ = ["HttpFetcher"]

_LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 60.0
CHUNK_SIZE = 64 * 1024


def _expected_digest(checksum: str) -> str:
    return checksum.removeprefix("sha256:").strip().lower()


class HttpFetcher(Fetcher):
    """Downloads a tar or zip archive and unpacks it.

    When the source declares a checksum the downloaded archive must match it.
    """

    source_type = SourceType.HTTP

    def __init__(
        self,
        session: requests.Session | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize HttpFetcher."""
        self._session = session or requests.Session()
        self._request_timeout = request_timeout

    async def fetch(
        self,
        source: TemplateSource,
        version: str,
        dest: Path,
        deadline: Deadline | None = None,
    ) -> FetchedArtifact:
        if source.http is None:
            raise SourceException(source.name, "not an http source")
        return await asyncio.to_thread(
            self._download, source.name, source.http, dest, deadline or Deadline()
        )

    def _request_timeout_for(self, deadline: Deadline) -> float:
        if (remaining := deadline.remaining()) is None:
            return self._request_timeout
        return min(self._request_timeout, remaining)

    def _download(
        self, source_name: str, obj: HttpSource, dest: Path, deadline: Deadline
    ) -> FetchedArtifact:
        archive_name = Path(urlparse(obj.url).path).name or "archive"
        with tempfile.TemporaryDirectory() as tmp:
            archive = Path(tmp) / archive_name
            digest = hashlib.sha256()
            deadline.check(source_name)
            _LOGGER.info("Downloading %s", obj.url)
            try:
                with self._session.get(
                    obj.url,
                    headers=obj.headers,
                    stream=True,
                    timeout=self._request_timeout_for(deadline),
                ) as response:
                    if response.status_code in (401, 403):
                        raise SourceAuthError(
                            source_name,
                            f"{obj.url} rejected credentials ({response.status_code})",
                        )
                    if response.status_code == 404:
                        raise SourceNotFoundError(source_name, f"{obj.url} not found")
                    response.raise_for_status()
                    with archive.open("wb") as archive_file:
                        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                            deadline.check(source_name)
                            digest.update(chunk)
                            archive_file.write(chunk)
            except requests.RequestException as err:
                deadline.check(source_name)
                raise SourceFetchError(
                    source_name, f"download of {obj.url} failed: {err}"
                ) from err
            except OSError as err:
                raise SourceFetchError(
                    source_name, f"failed to write {archive_name}: {err}"
                ) from err

            actual = digest.hexdigest()
            if obj.checksum and _expected_digest(obj.checksum) != actual:
                raise SourceException(
                    source_name,
                    f"checksum mismatch for {obj.url}: expected {obj.checksum}, "
                    f"got sha256:{actual}",
                )
            extract_archive(source_name, archive, dest, deadline)
        return FetchedArtifact(revision=f"sha256:{actual}")
