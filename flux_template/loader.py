"""Loader for the documents describing clusters, templates and node profiles.

Documents are read from YAML files on disk, either from the repository being
compiled or from the template directories of materialized cache entries.
Template directories also hold the kubernetes manifests the templates deploy,
so documents outside of the flux-template API group are skipped rather than
rejected.
"""

from collections.abc import AsyncGenerator, Iterable
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from .exceptions import FluxTemplateException, InputException
from .manifest import (
    API_GROUP,
    Cluster,
    NodeProfile,
    Project,
    Template,
    parse_doc,
)

__all__ = [
    "DocumentLoader",
    "LoadOptions",
    "LoadedDocuments",
    "load_documents",
]

_LOGGER = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")


@dataclass
class LoadOptions:
    """Options for loading documents.

    Attributes:
        path: Filesystem path to load documents from. Can be a file or directory.
        recursive: If True and path is a directory, load documents from all
                  subdirectories as well.
    """

    path: Path
    recursive: bool = True

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


@dataclass
class LoadedDocuments:
    """All documents found while loading one or more paths."""

    clusters: list[Cluster] = field(default_factory=list)
    templates: list[Template] = field(default_factory=list)
    profiles: dict[str, NodeProfile] = field(default_factory=dict)
    projects: list[Project] = field(default_factory=list)

    def add(self, obj: Cluster | Template | NodeProfile | Project) -> None:
        """Add a parsed document, rejecting duplicate names."""
        if isinstance(obj, Cluster):
            if self.get_cluster(obj.name):
                raise InputException(f"Duplicate Cluster '{obj.name}'")
            self.clusters.append(obj)
        elif isinstance(obj, Template):
            if self.get_template(obj.name):
                raise InputException(f"Duplicate Template '{obj.name}'")
            self.templates.append(obj)
        elif isinstance(obj, NodeProfile):
            if obj.name in self.profiles:
                raise InputException(f"Duplicate NodeProfile '{obj.name}'")
            self.profiles[obj.name] = obj
        else:
            self.projects.append(obj)

    def update(self, other: "LoadedDocuments") -> None:
        """Add every document of `other`."""
        for obj in [*other.clusters, *other.templates, *other.projects]:
            self.add(obj)
        for profile in other.profiles.values():
            self.add(profile)

    def get_cluster(self, name: str) -> Cluster | None:
        return next((c for c in self.clusters if c.name == name), None)

    def get_template(self, name: str) -> Template | None:
        return next((t for t in self.templates if t.name == name), None)


def _is_template_doc(doc: Any) -> bool:
    return (
        isinstance(doc, dict)
        and isinstance(api_version := doc.get("apiVersion"), str)
        and api_version.startswith(API_GROUP)
    )


class DocumentLoader:
    """Loads flux-template documents from the filesystem."""

    def __init__(self) -> None:
        """Initialize the document loader."""
        self._processed_files: set[Path] = set()

    async def load(self, options: LoadOptions) -> LoadedDocuments:
        """Load every document under the path of the given options."""
        _LOGGER.info("Loading documents from %s", options.path)
        result = LoadedDocuments()
        async for obj in self._load_path(options):
            result.add(obj)
        _LOGGER.info(
            "Loaded %d clusters, %d templates and %d node profiles",
            len(result.clusters),
            len(result.templates),
            len(result.profiles),
        )
        return result

    async def _load_path(
        self, options: LoadOptions
    ) -> AsyncGenerator[Cluster | Template | NodeProfile | Project, None]:
        if not options.path.exists():
            raise FluxTemplateException(f"Path does not exist: {options.path}")
        if options.path.is_file():
            async for obj in self._load_file(options.path):
                yield obj
        elif options.path.is_dir():
            async for obj in self._load_directory(options.path, options):
                yield obj
        else:
            raise FluxTemplateException(
                f"Path is not a file or directory: {options.path}"
            )

    async def _load_directory(
        self, path: Path, options: LoadOptions
    ) -> AsyncGenerator[Cluster | Template | NodeProfile | Project, None]:
        _LOGGER.debug("Loading directory: %s", path)
        for entry in sorted(path.iterdir()):
            if entry.is_file() and entry.suffix.lower() in YAML_SUFFIXES:
                async for obj in self._load_file(entry):
                    yield obj
            elif options.recursive and entry.is_dir() and entry.name != ".git":
                async for obj in self._load_directory(entry, options):
                    yield obj

    async def _load_file(
        self, path: Path
    ) -> AsyncGenerator[Cluster | Template | NodeProfile | Project, None]:
        """Load documents from a file.

        Raises:
            InputException: If the file is not valid YAML or holds an invalid
                flux-template document.
        """
        if path in self._processed_files:
            _LOGGER.debug("Skipping already processed file: %s", path)
            return
        self._processed_files.add(path)

        _LOGGER.debug("Processing file: %s", path)
        try:
            async with aiofiles.open(path, encoding="utf-8") as yaml_file:
                content = await yaml_file.read()
        except OSError as err:
            raise FluxTemplateException(f"Failed to read file {path}: {err}") from err

        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise InputException(f"Invalid YAML in file {path}: {err}") from err

        for doc in docs:
            if not _is_template_doc(doc):
                continue
            try:
                yield parse_doc(doc)
            except InputException as err:
                raise InputException(f"Invalid document in {path}: {err}") from err


async def load_documents(paths: Iterable[Path | str]) -> LoadedDocuments:
    """Load and combine the documents found under each path."""
    loader = DocumentLoader()
    result = LoadedDocuments()
    for path in paths:
        result.update(await loader.load(LoadOptions(path=Path(path))))
    return result
