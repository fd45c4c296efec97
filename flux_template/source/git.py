"""Fetch template sources from git repositories."""

import asyncio
import logging
from pathlib import Path
import tempfile

import git

from flux_template.exceptions import (
    SourceAuthError,
    SourceException,
    SourceFetchError,
    SourceNotFoundError,
)
from flux_template.manifest import GitSource, SourceType, TemplateSource

from .archive import copy_templates
from .artifact import FetchedArtifact
from .fetcher import Deadline, Fetcher

__all__ = ["GitFetcher"]

_LOGGER = logging.getLogger(__name__)

_AUTH_ERRORS = (
    "authentication failed",
    "could not read username",
    "permission denied",
    "access denied",
)
_NOT_FOUND_ERRORS = (
    "not found",
    "does not exist",
    "did not match any",
    "does not appear to be a git repository",
    "couldn't find remote ref",
    "reference is not a tree",
)


def _source_error(source_name: str, err: git.exc.GitCommandError) -> SourceException:
    """Classify a failed git command by the error it printed."""
    stderr = str(err.stderr or err).lower()
    if any(marker in stderr for marker in _AUTH_ERRORS):
        return SourceAuthError(source_name, f"git authentication failed: {err}")
    if any(marker in stderr for marker in _NOT_FOUND_ERRORS):
        return SourceNotFoundError(
            source_name, f"git repository or ref not found: {err}"
        )
    return SourceFetchError(source_name, f"git operation failed: {err}")


def _clone(
    source_name: str, obj: GitSource, ref: str, dest: Path, deadline: Deadline
) -> FetchedArtifact:
    with tempfile.TemporaryDirectory() as tmp:
        checkout = Path(tmp) / "repo"
        try:
            git.Git.check_unsafe_protocols(obj.url)
            deadline.check(source_name)
            if obj.commit:
                _LOGGER.info("Cloning repository %s at commit %s", obj.url, ref)
                git.Git(tmp).clone(
                    obj.url, str(checkout), kill_after_timeout=deadline.remaining()
                )
                repo = git.Repo(checkout)
                repo.git.checkout(ref, kill_after_timeout=deadline.remaining())
            else:
                _LOGGER.info("Cloning repository %s at %s", obj.url, ref)
                git.Git(tmp).clone(
                    obj.url,
                    str(checkout),
                    branch=ref,
                    depth=1,
                    kill_after_timeout=deadline.remaining(),
                )
                repo = git.Repo(checkout)
            with repo:
                revision = repo.head.commit.hexsha
        except git.exc.GitCommandError as err:
            deadline.check(source_name)
            raise _source_error(source_name, err) from err
        except git.exc.GitError as err:
            raise SourceFetchError(source_name, f"git operation failed: {err}") from err
        except ValueError as err:
            raise SourceNotFoundError(
                source_name, f"{obj.url}@{ref} has no commits: {err}"
            ) from err
        src = checkout / obj.path if obj.path else checkout
        if not src.is_dir():
            raise SourceNotFoundError(
                source_name, f"path '{obj.path}' not found in {obj.url}@{ref}"
            )
        copy_templates(source_name, src, dest, deadline, exclude=(".git",))
    _LOGGER.debug("Fetched %s at revision %s", obj.url, revision)
    return FetchedArtifact(revision=revision)


class GitFetcher(Fetcher):
    """Clones a git repository at a branch, tag or commit.

    Git commands are killed once the fetch deadline passes.
    """

    source_type = SourceType.GIT

    async def fetch(
        self,
        source: TemplateSource,
        version: str,
        dest: Path,
        deadline: Deadline | None = None,
    ) -> FetchedArtifact:
        if source.git is None:
            raise SourceException(source.name, "not a git source")
        return await asyncio.to_thread(
            _clone, source.name, source.git, version, dest, deadline or Deadline()
        )
