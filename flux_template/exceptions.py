"""Exceptions related to flux-template."""

from typing import Any

__all__ = [
    "FluxTemplateException",
    "InputException",
    "SourceException",
    "SourceFetchError",
    "SourceTimeoutError",
    "SourceNotFoundError",
    "SourceAuthError",
    "CacheCorruptError",
    "InvalidReferenceError",
    "CompileError",
    "ValidationFailed",
    "PipelineContractError",
    "PluginError",
]


class FluxTemplateException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxTemplateException):
    """Raised when the input files or values are not formatted as expected."""


class SourceException(FluxTemplateException):
    """Raised when a template source could not be materialized."""

    retryable: bool = False
    """Whether the caller may reasonably retry the same fetch."""

    def __init__(self, source_name: str, message: str) -> None:
        super().__init__(f"Source {source_name}: {message}")
        self.source_name = source_name


class SourceFetchError(SourceException):
    """Raised for transport failures such as network errors."""

    retryable = True


class SourceTimeoutError(SourceFetchError):
    """Raised when a fetch did not complete within its timeout."""

    def __init__(self, source_name: str, timeout: float) -> None:
        super().__init__(source_name, f"fetch timed out after {timeout}s")
        self.timeout = timeout


class SourceNotFoundError(SourceException):
    """Raised when the source or requested version does not exist."""


class SourceAuthError(SourceException):
    """Raised when the remote rejected the supplied credentials."""


class CacheCorruptError(SourceException):
    """Raised when a cache entry exists but its metadata cannot be read."""


class InvalidReferenceError(InputException):
    """Raised for a dependency reference that is not `unit` or `template/unit`."""

    def __init__(self, reference: str, message: str) -> None:
        super().__init__(message)
        self.reference = reference


class CompileError(FluxTemplateException):
    """Raised when the compiler receives input that was not validated."""


class ValidationFailed(FluxTemplateException):
    """Raised by the pipeline when validation reported errors."""

    def __init__(self, errors: list[Any]) -> None:
        lines = "\n".join(f"  - {error.message}" for error in errors)
        super().__init__(f"Validation failed with {len(errors)} error(s):\n{lines}")
        self.errors = errors


class PipelineContractError(FluxTemplateException):
    """A pipeline handler broke the handler chain contract."""


class PluginError(FluxTemplateException):
    """Raised when a plugin is misconfigured or fails while running."""

    def __init__(self, plugin_name: str, message: str) -> None:
        super().__init__(f"Plugin {plugin_name}: {message}")
        self.plugin_name = plugin_name
