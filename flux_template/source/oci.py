"""Fetch template sources from OCI registries."""

import asyncio
from collections.abc import Callable
import logging
from pathlib import Path

from oras.client import OrasClient
import requests

from flux_template.exceptions import (
    SourceAuthError,
    SourceException,
    SourceFetchError,
    SourceNotFoundError,
)
from flux_template.manifest import OciSource, SourceType, TemplateSource

from .archive import extract_archive, is_archive
from .artifact import FetchedArtifact
from .fetcher import Deadline, Fetcher

__all__ = ["OciFetcher"]

_LOGGER = logging.getLogger(__name__)


def _target(obj: OciSource, version: str) -> str:
    if version.startswith("sha256:"):
        return f"{obj.url}@{version}"
    return f"{obj.url}:{version}"


def _source_error(source_name: str, target: str, err: Exception) -> SourceException:
    message = str(err).lower()
    status = None
    if isinstance(err, requests.HTTPError) and err.response is not None:
        status = err.response.status_code
    if status in (401, 403) or "unauthorized" in message or "denied" in message:
        return SourceAuthError(source_name, f"registry rejected credentials: {err}")
    if status == 404 or "not found" in message or "unknown" in message:
        return SourceNotFoundError(source_name, f"{target} not found: {err}")
    return SourceFetchError(source_name, f"failed to pull {target}: {err}")


class OciFetcher(Fetcher):
    """Pulls an OCI artifact and unpacks any archive layers it contains."""

    source_type = SourceType.OCI

    def __init__(self, client_factory: Callable[[], OrasClient] = OrasClient) -> None:
        """Initialize OciFetcher."""
        self._client_factory = client_factory

    async def fetch(
        self,
        source: TemplateSource,
        version: str,
        dest: Path,
        deadline: Deadline | None = None,
    ) -> FetchedArtifact:
        if source.oci is None:
            raise SourceException(source.name, "not an oci source")
        return await asyncio.to_thread(
            self._pull, source.name, source.oci, version, dest, deadline or Deadline()
        )

    def _pull(
        self,
        source_name: str,
        obj: OciSource,
        version: str,
        dest: Path,
        deadline: Deadline,
    ) -> FetchedArtifact:
        target = _target(obj, version)
        deadline.check(source_name)
        _LOGGER.info("Pulling OCI artifact %s", target)
        client = self._client_factory()
        try:
            files = client.pull(target=target, outdir=str(dest))
        except (requests.RequestException, ValueError) as err:
            deadline.check(source_name)
            raise _source_error(source_name, target, err) from err
        except OSError as err:
            raise SourceFetchError(
                source_name, f"failed to write {target}: {err}"
            ) from err
        _LOGGER.debug("Downloaded resources: %s", files)
        for file in files or ():
            deadline.check(source_name)
            path = Path(file)
            if path.is_file() and is_archive(path):
                extract_archive(source_name, path, dest, deadline)
                path.unlink()
        return FetchedArtifact(revision=version)
