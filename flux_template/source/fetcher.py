"""Interface implemented by each source transport."""

from abc import ABC, abstractmethod
from pathlib import Path
import threading
import time
from typing import ClassVar

from flux_template.exceptions import SourceTimeoutError
from flux_template.manifest import SourceType, TemplateSource

from .artifact import FetchedArtifact

__all__ = ["Deadline", "Fetcher"]


class Deadline:
    """The time a fetch has left, shared with the thread doing the work.

    Transports run blocking clients in a worker thread that asyncio can not
    interrupt. They pass `remaining()` on as client timeouts and call
    `check()` between steps, so a fetch stops writing once the cache gave up
    on it.
    """

    def __init__(self, timeout: float | None = None) -> None:
        """Initialize Deadline."""
        self._timeout = timeout
        self._expires = None if timeout is None else time.monotonic() + timeout
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Ask the fetch to stop as soon as it next checks the deadline."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._expires is not None and time.monotonic() >= self._expires

    def remaining(self) -> float | None:
        """Seconds left, or None when the fetch has no time limit."""
        if self._cancelled.is_set():
            return 0.0
        if self._expires is None:
            return None
        return max(0.0, self._expires - time.monotonic())

    def check(self, source_name: str) -> None:
        """Raise `SourceTimeoutError` once the deadline passed or was cancelled."""
        if self.expired:
            raise SourceTimeoutError(source_name, self._timeout or 0)


class Fetcher(ABC):
    """Writes the templates of a source at a version into a directory."""

    source_type: ClassVar[SourceType]

    @abstractmethod
    async def fetch(
        self,
        source: TemplateSource,
        version: str,
        dest: Path,
        deadline: Deadline | None = None,
    ) -> FetchedArtifact:
        """Fetch the source into the empty directory `dest`.

        Implementations stop writing into `dest` once `deadline` expires.

        Raises:
            SourceException: A subclass describing why the fetch failed.
        """
