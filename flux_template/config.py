"""Configuration objects for flux-template."""

from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "CacheConfig",
    "CompilerConfig",
    "ValidationOptions",
    "DEFAULT_CACHE_DIR",
]

DEFAULT_CACHE_DIR = Path(".flux-template/templates-cache")
DEFAULT_TTL = "1h"
DEFAULT_FETCH_TIMEOUT = 120.0
DEFAULT_CANCEL_GRACE = 10.0
DEFAULT_GIT_REPOSITORY_NAME = "flux-system"
DEFAULT_TEMPLATE_BASE_PATH = "./templates"


@dataclass
class CacheConfig:
    """Configuration for the template source cache."""

    cache_dir: Path = DEFAULT_CACHE_DIR
    """Root directory holding one entry per source and version."""

    default_ttl: str = DEFAULT_TTL
    """Freshness of mutable sources that do not set their own ttl."""

    fetch_timeout: float | None = DEFAULT_FETCH_TIMEOUT
    """Seconds before an individual fetch is abandoned, or None to wait forever."""

    cancel_grace: float = DEFAULT_CANCEL_GRACE
    """Seconds a timed out fetch is given to stop before its files are left behind."""


@dataclass
class CompilerConfig:
    """Configuration for the resource compiler."""

    template_base_path: str = DEFAULT_TEMPLATE_BASE_PATH
    """Path prefix of the template sources within the deployed artifact."""

    template_paths: dict[str, str] = field(default_factory=dict)
    """Template name to source path, overriding `template_base_path`."""

    git_repository_name: str = DEFAULT_GIT_REPOSITORY_NAME
    """Name of the GitRepository used when the cluster has no OCI config."""

    namespace_labels: dict[str, str] = field(default_factory=dict)
    """Labels added to the generated Namespace resources."""


@dataclass
class ValidationOptions:
    """Configuration for dependency validation."""

    detect_cycles: bool = False
    """Also reject cyclic dependsOn chains among enabled units."""

    skip: bool = False
    """Compile even when validation reported errors."""
