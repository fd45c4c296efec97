"""Run a cluster through every compilation stage.

A compilation is a chain of handlers sharing a `CompileState`. Each handler
does its work and calls `next()` to hand control to the following handler,
so middleware may act both before and after the stages that follow it:

    enable -> plugin values -> validate -> substitute -> compile -> generate

The state that lives for a whole run (configuration, the source cache and the
plugin registry) is held by a `RunContext` created with `run_context()`.
"""

from collections.abc import Callable, Generator, Iterable, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from pathlib import Path

from .compiler import (
    CompileResult,
    compile_controller_patches,
    compile_namespaces,
    compile_resources,
    compile_source_repository,
)
from .config import CacheConfig, CompilerConfig, ValidationOptions
from .context import current_trace, trace_context
from .enablement import EnabledSet, resolve_enabled
from .exceptions import PipelineContractError, ValidationFailed
from .loader import LoadedDocuments, load_documents
from .manifest import Cluster, NodeProfile, Template, TemplateSource
from .node_id import NodeID
from .plugins import PluginContext, PluginRegistry
from .source import SourceCache, SourceResult, Status
from .substitution import resolve_all_substitutions
from .validation import ValidationError, validate, validate_cluster

__all__ = [
    "RunContext",
    "run_context",
    "CompileState",
    "Pipeline",
    "Handler",
    "Next",
    "StageResult",
    "compile_cluster",
    "load_sources",
]

_LOGGER = logging.getLogger(__name__)


class RunContext:
    """State shared by every stage of a run."""

    def __init__(
        self,
        cache_config: CacheConfig | None = None,
        compiler_config: CompilerConfig | None = None,
        validation_options: ValidationOptions | None = None,
        plugins: PluginRegistry | None = None,
        cache: SourceCache | None = None,
    ) -> None:
        """Initialize RunContext."""
        self.cache_config = cache_config or CacheConfig()
        self.compiler_config = compiler_config or CompilerConfig()
        self.validation_options = validation_options or ValidationOptions()
        self.plugins = plugins or PluginRegistry()
        self._cache = cache

    @property
    def cache(self) -> SourceCache:
        """The source cache, created on first use."""
        if self._cache is None:
            self._cache = SourceCache(self.cache_config)
        return self._cache


@contextmanager
def run_context(
    cache_config: CacheConfig | None = None,
    compiler_config: CompilerConfig | None = None,
    validation_options: ValidationOptions | None = None,
    plugins: PluginRegistry | None = None,
    cache: SourceCache | None = None,
) -> Generator[RunContext, None, None]:
    """Create the context for a run and release it when the run ends."""
    context = RunContext(
        cache_config=cache_config,
        compiler_config=compiler_config,
        validation_options=validation_options,
        plugins=plugins,
        cache=cache,
    )
    with trace_context("run"):
        try:
            yield context
        finally:
            context.plugins.clear()


@dataclass
class CompileState:
    """Inputs and intermediate results of compiling one cluster."""

    context: RunContext
    cluster: Cluster
    templates: list[Template]
    profiles: Mapping[str, NodeProfile] = field(default_factory=dict)

    enabled: EnabledSet | None = None
    external: dict[str, str] = field(default_factory=dict)
    """Values contributed by substitution providers."""

    errors: list[ValidationError] = field(default_factory=list)
    substitutions: dict[NodeID, dict[str, str]] = field(default_factory=dict)
    result: CompileResult | None = None

    def plugin_context(self) -> PluginContext:
        enabled_names = self.enabled.template_names if self.enabled else []
        return PluginContext(
            cluster=self.cluster,
            templates=tuple(t for t in self.templates if t.name in enabled_names),
            profiles=self.profiles,
        )


StageResult = PipelineContractError | None
Next = Callable[[], StageResult]
Handler = Callable[[CompileState, Next], StageResult]


class Pipeline:
    """Runs handlers in order, each one invoking the next through `next()`.

    A handler may call `next()` at most once. A second call does not run
    anything and returns a `PipelineContractError`, which is also the result
    of the run.
    """

    def __init__(self, handlers: Iterable[Handler]) -> None:
        """Initialize Pipeline."""
        self._handlers: Sequence[Handler] = list(handlers)

    def run(self, state: CompileState) -> PipelineContractError | None:
        """Run every handler and return the first contract violation, if any."""
        index = -1
        error: PipelineContractError | None = None

        def dispatch(i: int) -> PipelineContractError | None:
            nonlocal index, error
            if error is not None:
                return error
            if i <= index:
                name = getattr(self._handlers[i - 1], "__name__", repr(i - 1))
                error = PipelineContractError(
                    f"Handler '{name}' called next() more than once"
                )
                return error
            index = i
            if i >= len(self._handlers):
                return None
            handler = self._handlers[i]
            handler(state, lambda: dispatch(i + 1))
            return error

        return dispatch(0)


def _enable(state: CompileState, call_next: Next) -> StageResult:
    with trace_context("enable"):
        state.enabled = resolve_enabled(state.cluster, state.templates)
    return call_next()


def _plugin_values(state: CompileState, call_next: Next) -> StageResult:
    with trace_context("plugin values"):
        state.external = state.context.plugins.substitution_values(
            state.plugin_context()
        )
    return call_next()


def _validate(state: CompileState, call_next: Next) -> StageResult:
    assert state.enabled is not None
    options = state.context.validation_options
    with trace_context("validate"):
        state.errors = [
            *validate_cluster(
                state.cluster, state.templates, state.profiles, state.external
            ),
            *validate(state.enabled, state.templates, options),
            *state.context.plugins.validate(state.plugin_context()),
        ]
    if state.errors:
        if not options.skip:
            raise ValidationFailed(state.errors)
        _LOGGER.warning(
            "%s: ignoring %d validation errors",
            current_trace(),
            len(state.errors),
        )
    return call_next()


def _substitute(state: CompileState, call_next: Next) -> StageResult:
    assert state.enabled is not None
    with trace_context("substitute"):
        state.substitutions = resolve_all_substitutions(
            state.cluster, state.enabled, state.profiles, state.external
        )
    return call_next()


def _compile(state: CompileState, call_next: Next) -> StageResult:
    assert state.enabled is not None
    with trace_context("compile"):
        state.result = CompileResult(
            cluster=state.cluster.name,
            resources=compile_resources(
                state.cluster,
                state.enabled,
                state.substitutions,
                state.context.compiler_config,
            ),
            source_repository=compile_source_repository(state.cluster),
            patches=compile_controller_patches(state.cluster.flux),
            namespaces=compile_namespaces(
                state.cluster, state.enabled, state.context.compiler_config
            ),
        )
    return call_next()


def _generate(state: CompileState, call_next: Next) -> StageResult:
    assert state.result is not None
    with trace_context("generate"):
        state.result.generated = state.context.plugins.generate_resources(
            state.plugin_context()
        )
    return call_next()


STAGES: tuple[Handler, ...] = (
    _enable,
    _plugin_values,
    _validate,
    _substitute,
    _compile,
    _generate,
)


def compile_cluster(
    cluster: Cluster,
    templates: Iterable[Template],
    profiles: Mapping[str, NodeProfile] | None = None,
    context: RunContext | None = None,
    middleware: Iterable[Handler] = (),
) -> CompileResult:
    """Compile the resources deploying the cluster's enabled templates.

    Args:
        cluster: The cluster to compile
        templates: Every loaded template
        profiles: Node profiles by name
        context: The run context, defaulting to a context with default
            configuration and no plugins
        middleware: Handlers run before, and wrapping, the built in stages

    Raises:
        ValidationFailed: With every validation error found, unless the run
            is configured to skip validation failures.
        PipelineContractError: If a middleware handler broke the chain.
    """
    state = CompileState(
        context=context or RunContext(),
        cluster=cluster,
        templates=list(templates),
        profiles=profiles or {},
    )
    with trace_context(f"cluster {cluster.name}"):
        if error := Pipeline([*middleware, *STAGES]).run(state):
            raise error
    if state.result is None:
        raise PipelineContractError(
            f"Compilation of cluster '{cluster.name}' stopped before producing "
            "a result"
        )
    _LOGGER.info(
        "Compiled %d resources for cluster %s",
        len(state.result.resources),
        cluster.name,
    )
    return state.result


def _source_path(result: SourceResult) -> Path:
    assert result.entry is not None
    return result.entry.templates_path


async def load_sources(
    context: RunContext, sources: Iterable[TemplateSource]
) -> tuple[LoadedDocuments, list[SourceResult]]:
    """Materialize the sources and load the documents found in them.

    Documents are only loaded from sources that were fetched successfully;
    the per source results report the failures.
    """
    with trace_context("sources"):
        results = await context.cache.fetch_all(
            sources, timeout=context.cache_config.fetch_timeout
        )
        documents = await load_documents(
            _source_path(result) for result in results if result.status == Status.READY
        )
    return documents, results
