"""Tests for the compilation pipeline."""

import dataclasses
from pathlib import Path

import pytest

from flux_template.config import CacheConfig, ValidationOptions
from flux_template.exceptions import PipelineContractError, ValidationFailed
from flux_template.manifest import (
    Cluster,
    Kustomization,
    NodeLabelRequirement,
    NodeProfile,
    SourceType,
    Substitution,
    Template,
    TemplateConfig,
    TemplateSource,
)
from flux_template.pipeline import (
    CompileState,
    Next,
    Pipeline,
    RunContext,
    StageResult,
    compile_cluster,
    load_sources,
    run_context,
)
from flux_template.plugins import (
    PluginRegistry,
    ResourceGenerator,
    SubstitutionProvider,
    Validator,
)
from flux_template.source import (
    Deadline,
    FetchedArtifact,
    Fetcher,
    SourceCache,
    Status,
)
from flux_template.validation import ErrorKind

TEMPLATE_DOC = """\
---
apiVersion: flux-template.io/v1
kind: Template
metadata:
  name: monitoring
spec:
  kustomizations:
    - name: prometheus
      path: ./prometheus
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: not-a-template
"""


def test_compile_cluster(
    prod: Cluster, templates: list[Template], profiles: dict[str, NodeProfile]
) -> None:
    """Test compiling a valid cluster."""
    result = compile_cluster(prod, templates, profiles)
    assert result.cluster == "prod"
    assert [r.name for r in result.resources] == ["web-db", "web-app"]
    assert result.source_repository
    assert result.source_repository.ref == {"tag": "prod"}
    assert len(result.patches) == 3
    assert result.generated == []
    assert [namespace.name for namespace in result.namespaces] == ["web"]
    docs = result.manifests()
    assert docs[0]["kind"] == "Namespace"
    assert docs[-1]["patches"]


def test_unmet_node_requirement(
    prod: Cluster, templates: list[Template], profiles: dict[str, NodeProfile]
) -> None:
    """Test a template needing node labels the cluster lacks is rejected."""
    web = dataclasses.replace(
        templates[0],
        requirements=[NodeLabelRequirement(key="gpu", value="a100", at_least=2)],
    )
    with pytest.raises(ValidationFailed) as exc_info:
        compile_cluster(prod, [web], profiles)
    assert [error.kind for error in exc_info.value.errors] == [
        ErrorKind.UNMET_REQUIREMENT
    ]
    assert "label 'gpu=a100'" in str(exc_info.value)


def test_validation_failed() -> None:
    """Test every validation error is raised together."""
    web = Template(
        name="web",
        kustomizations=[
            Kustomization(
                name="app",
                path="./app",
                depends_on=["auth/login", "metrics/agent"],
                substitutions=[Substitution(name="domain")],
            )
        ],
    )
    cluster = Cluster(name="c", templates=[TemplateConfig(name="web")])
    with pytest.raises(ValidationFailed) as exc_info:
        compile_cluster(cluster, [web])
    assert [error.target for error in exc_info.value.errors] == [
        "domain",
        "auth/login",
        "metrics/agent",
    ]
    assert "3 error(s)" in str(exc_info.value)


def test_skip_validation_failures(templates: list[Template]) -> None:
    """Test compiling despite validation errors when configured."""
    cluster = Cluster(
        name="c",
        nodes=["missing"],
        values={"domain": "example.com"},
        templates=[TemplateConfig(name="web")],
    )
    context = RunContext(validation_options=ValidationOptions(skip=True))
    result = compile_cluster(cluster, templates, context=context)
    assert [r.name for r in result.resources] == ["web-db", "web-app"]


def test_plugins(staging: Cluster, templates: list[Template]) -> None:
    """Test plugins run as part of the compilation."""
    registry = PluginRegistry(
        [
            SubstitutionProvider(name="vault", resolve=lambda ctx: {"token": "abc"}),
            ResourceGenerator(
                name="inventory",
                generate=lambda ctx: [
                    {
                        "apiVersion": "v1",
                        "kind": "ConfigMap",
                        "metadata": {"name": t.name},
                    }
                    for t in ctx.templates
                ],
            ),
        ]
    )
    result = compile_cluster(staging, templates, context=RunContext(plugins=registry))
    assert all(r.substitute["token"] == "abc" for r in result.resources)
    assert [doc["metadata"]["name"] for doc in result.generated] == ["web", "auth"]


def test_plugin_validator(staging: Cluster, templates: list[Template]) -> None:
    """Test validator plugin errors fail the compilation."""
    registry = PluginRegistry(
        [Validator(name="policy", validate=lambda ctx: ["missing owner"])]
    )
    with pytest.raises(ValidationFailed, match="Plugin 'policy': missing owner"):
        compile_cluster(staging, templates, context=RunContext(plugins=registry))


def test_middleware(staging: Cluster, templates: list[Template]) -> None:
    """Test middleware runs before and after the built in stages."""
    calls: list[str] = []

    def record(state: CompileState, call_next: Next) -> StageResult:
        calls.append("before")
        assert state.result is None
        result = call_next()
        assert state.result is not None
        calls.append(f"after {len(state.result.resources)}")
        return result

    compile_cluster(staging, templates, middleware=[record])
    assert calls == ["before", "after 3"]


def test_next_called_twice(staging: Cluster, templates: list[Template]) -> None:
    """Test a handler calling next twice fails the run."""
    results: list[StageResult] = []

    def twice(state: CompileState, call_next: Next) -> StageResult:
        results.append(call_next())
        results.append(call_next())
        return results[-1]

    with pytest.raises(PipelineContractError, match="'twice' called next"):
        compile_cluster(staging, templates, middleware=[twice])
    assert results[0] is None
    assert isinstance(results[1], PipelineContractError)


def test_pipeline_stops_after_violation(staging: Cluster) -> None:
    """Test no handler runs once the contract was broken."""
    calls: list[str] = []

    def twice(state: CompileState, call_next: Next) -> StageResult:
        call_next()
        return call_next()

    def last(state: CompileState, call_next: Next) -> StageResult:
        calls.append("last")
        return call_next()

    state = CompileState(context=RunContext(), cluster=staging, templates=[])
    error = Pipeline([twice, last]).run(state)
    assert isinstance(error, PipelineContractError)
    assert calls == ["last"]


def test_short_circuit(staging: Cluster, templates: list[Template]) -> None:
    """Test a handler that never calls next leaves no result."""

    def stop(state: CompileState, call_next: Next) -> StageResult:
        return None

    with pytest.raises(PipelineContractError, match="stopped before"):
        compile_cluster(staging, templates, middleware=[stop])


def test_run_context_teardown() -> None:
    """Test the run context releases its plugins at exit."""
    registry = PluginRegistry(
        [Validator(name="policy", validate=lambda ctx: [])]
    )
    with run_context(plugins=registry) as context:
        assert context.plugins is registry
        assert len(context.plugins) == 1
    assert len(registry) == 0


class TemplateFetcher(Fetcher):
    """Writes a template document instead of fetching."""

    source_type = SourceType.GIT

    async def fetch(
        self,
        source: TemplateSource,
        version: str,
        dest: Path,
        deadline: Deadline | None = None,
    ) -> FetchedArtifact:
        (dest / "template.yaml").write_text(TEMPLATE_DOC)
        return FetchedArtifact(revision="abc")


async def test_load_sources(tmp_path: Path) -> None:
    """Test loading templates from materialized sources."""
    cache = SourceCache(
        CacheConfig(cache_dir=tmp_path),
        fetchers={SourceType.GIT: TemplateFetcher()},
    )
    sources = [
        TemplateSource.parse_doc(
            {"name": "shared", "git": {"url": "u", "ref": {"tag": "v1"}}}
        ),
        TemplateSource.parse_doc(
            {"name": "remote", "http": {"url": "https://example.com/t.tgz"}}
        ),
    ]
    with run_context(cache=cache) as context:
        documents, results = await load_sources(context, sources)
    assert [result.status for result in results] == [Status.READY, Status.FAILED]
    assert [template.name for template in documents.templates] == ["monitoring"]
