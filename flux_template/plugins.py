"""Plugins extending a compilation run.

There are three kinds of plugins, distinguished by their `type`:

- A substitution provider contributes values to every unit's substitutions,
  e.g. secrets resolved from an external store. Values from providers rank
  below the values written in the cluster.
- A resource generator contributes extra documents to the output.
- A validator contributes additional validation errors.

Plugins are registered on the `PluginRegistry` owned by a run and every
plugin call reports failures as a `PluginError`.
"""

from collections.abc import Callable, Generator, Iterable, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, ClassVar, TypeVar

from .exceptions import FluxTemplateException, PluginError
from .manifest import Cluster, NodeProfile, Template, stringify_value
from .validation import ErrorKind, ValidationError

__all__ = [
    "PluginType",
    "PluginContext",
    "SubstitutionProvider",
    "ResourceGenerator",
    "Validator",
    "Plugin",
    "PluginRegistry",
]

_LOGGER = logging.getLogger(__name__)


class PluginType(StrEnum):
    """The capability a plugin provides."""

    SUBSTITUTION_PROVIDER = "substitution-provider"
    RESOURCE_GENERATOR = "resource-generator"
    VALIDATOR = "validator"


@dataclass(frozen=True)
class PluginContext:
    """Inputs available to a plugin."""

    cluster: Cluster
    templates: tuple[Template, ...]
    """The templates enabled for the cluster."""

    profiles: Mapping[str, NodeProfile] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class SubstitutionProvider:
    """Contributes substitution values shared by every unit of a cluster."""

    type: ClassVar[PluginType] = PluginType.SUBSTITUTION_PROVIDER

    name: str
    resolve: Callable[[PluginContext], Mapping[str, Any]]


@dataclass(frozen=True, kw_only=True)
class ResourceGenerator:
    """Contributes additional documents to the compiled output."""

    type: ClassVar[PluginType] = PluginType.RESOURCE_GENERATOR

    name: str
    generate: Callable[[PluginContext], Iterable[dict[str, Any]]]


@dataclass(frozen=True, kw_only=True)
class Validator:
    """Checks a cluster and returns a message for each problem found."""

    type: ClassVar[PluginType] = PluginType.VALIDATOR

    name: str
    validate: Callable[[PluginContext], Iterable[str]]


Plugin = SubstitutionProvider | ResourceGenerator | Validator

PluginOutput = dict[str, str] | list[dict[str, Any]] | list[ValidationError]

_PluginT = TypeVar("_PluginT", SubstitutionProvider, ResourceGenerator, Validator)


@contextmanager
def _plugin_errors(plugin: Plugin) -> Generator[None, None, None]:
    """Report anything a plugin raises as a `PluginError`."""
    _LOGGER.debug("Invoking %s plugin %s", plugin.type, plugin.name)
    try:
        yield
    except FluxTemplateException:
        raise
    except Exception as err:
        raise PluginError(plugin.name, f"failed: {err}") from err


def _resolve(plugin: SubstitutionProvider, context: PluginContext) -> dict[str, str]:
    with _plugin_errors(plugin):
        values = plugin.resolve(context)
        return {str(k): stringify_value(v) for k, v in values.items()}


def _generate(
    plugin: ResourceGenerator, context: PluginContext
) -> list[dict[str, Any]]:
    with _plugin_errors(plugin):
        docs = list(plugin.generate(context))
    for doc in docs:
        if not isinstance(doc, dict) or not doc.get("kind"):
            raise PluginError(plugin.name, f"generated an invalid document: {doc}")
    return docs


def _validate(plugin: Validator, context: PluginContext) -> list[ValidationError]:
    with _plugin_errors(plugin):
        messages = list(plugin.validate(context))
    return [
        ValidationError(
            kind=ErrorKind.PLUGIN,
            source=context.cluster.name,
            target=plugin.name,
            message=f"Plugin '{plugin.name}': {message}",
        )
        for message in messages
    ]


class PluginRegistry:
    """The plugins registered for a run, in registration order."""

    def __init__(self, plugins: Iterable[Plugin] = ()) -> None:
        """Initialize PluginRegistry."""
        self._plugins: dict[str, Plugin] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: Plugin) -> None:
        """Register a plugin, rejecting a second plugin with the same name."""
        if plugin.name in self._plugins:
            raise PluginError(plugin.name, "already registered")
        _LOGGER.debug("Registering %s plugin %s", plugin.type, plugin.name)
        self._plugins[plugin.name] = plugin

    def get(self, name: str) -> Plugin | None:
        return self._plugins.get(name)

    def plugins(self, plugin_type: PluginType | None = None) -> list[Plugin]:
        """Return the registered plugins, optionally only those of one type."""
        return [
            plugin
            for plugin in self._plugins.values()
            if plugin_type is None or plugin.type == plugin_type
        ]

    def clear(self) -> None:
        self._plugins.clear()

    def __len__(self) -> int:
        return len(self._plugins)

    def _of_type(self, plugin_type: type[_PluginT]) -> list[_PluginT]:
        return [
            plugin
            for plugin in self._plugins.values()
            if isinstance(plugin, plugin_type)
        ]

    def invoke(self, plugin: Plugin, context: PluginContext) -> PluginOutput:
        """Run a single plugin and normalize its output.

        Raises:
            PluginError: If the plugin raised or returned invalid output.
        """
        if isinstance(plugin, SubstitutionProvider):
            return _resolve(plugin, context)
        if isinstance(plugin, ResourceGenerator):
            return _generate(plugin, context)
        if isinstance(plugin, Validator):
            return _validate(plugin, context)
        raise PluginError(plugin.name, f"unsupported plugin {plugin!r}")

    def substitution_values(self, context: PluginContext) -> dict[str, str]:
        """Merge the values of every substitution provider.

        A provider registered later replaces the values of an earlier one.
        """
        values: dict[str, str] = {}
        for plugin in self._of_type(SubstitutionProvider):
            values.update(_resolve(plugin, context))
        return values

    def generate_resources(self, context: PluginContext) -> list[dict[str, Any]]:
        """Return the documents of every resource generator."""
        docs: list[dict[str, Any]] = []
        for plugin in self._of_type(ResourceGenerator):
            docs.extend(_generate(plugin, context))
        return docs

    def validate(self, context: PluginContext) -> list[ValidationError]:
        """Return the errors reported by every validator."""
        errors: list[ValidationError] = []
        for plugin in self._of_type(Validator):
            errors.extend(_validate(plugin, context))
        return errors
