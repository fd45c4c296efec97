"""Helpers for unpacking downloaded template archives."""

from collections.abc import Iterable
import logging
from pathlib import Path
import shutil
import tarfile
import tempfile
import zipfile
import zlib

from flux_template.exceptions import SourceException, SourceFetchError

from .fetcher import Deadline

_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar", ".zip")

_CORRUPT_ARCHIVE_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    EOFError,
    zlib.error,
)


def is_archive(path: Path) -> bool:
    """Return True if the file name looks like a supported archive."""
    return path.name.endswith(ARCHIVE_SUFFIXES)


def copy_templates(
    source_name: str,
    src: Path,
    dest: Path,
    deadline: Deadline | None = None,
    exclude: Iterable[str] = (),
) -> None:
    """Copy a fetched tree into `dest`, stopping once the deadline expires."""
    excluded = set(exclude)

    def ignore(directory: str, names: list[str]) -> set[str]:
        if deadline is not None:
            deadline.check(source_name)
        return excluded.intersection(names)

    try:
        shutil.copytree(src, dest, dirs_exist_ok=True, ignore=ignore)
    except OSError as err:
        raise SourceFetchError(source_name, f"failed to copy templates: {err}") from err


def extract_archive(
    source_name: str, archive: Path, dest: Path, deadline: Deadline | None = None
) -> None:
    """Unpack a tar or zip archive into `dest`.

    An archive holding a single top level directory is unwrapped so that
    `dest` contains the templates directly.

    Raises:
        SourceException: If the archive is not a readable tar or zip archive.
    """
    with tempfile.TemporaryDirectory() as tmp:
        extract_dir = Path(tmp)
        try:
            if tarfile.is_tarfile(archive):
                with tarfile.open(archive) as tar:
                    tar.extractall(extract_dir, filter="data")
            elif zipfile.is_zipfile(archive):
                with zipfile.ZipFile(archive) as zip_file:
                    zip_file.extractall(extract_dir)
            else:
                raise SourceException(
                    source_name, f"{archive.name} is not a tar or zip archive"
                )
        except _CORRUPT_ARCHIVE_ERRORS as err:
            raise SourceException(
                source_name, f"{archive.name} is a corrupt archive: {err}"
            ) from err
        except OSError as err:
            raise SourceFetchError(
                source_name, f"failed to extract {archive.name}: {err}"
            ) from err
        children = list(extract_dir.iterdir())
        root = extract_dir
        if len(children) == 1 and children[0].is_dir():
            root = children[0]
        _LOGGER.debug("Extracting %s from %s to %s", root.name, archive, dest)
        copy_templates(source_name, root, dest, deadline)
