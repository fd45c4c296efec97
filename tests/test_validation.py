"""Tests for the validation library."""

from flux_template.config import ValidationOptions
from flux_template.enablement import resolve_enabled
from flux_template.manifest import (
    Cluster,
    Kustomization,
    KustomizationOverride,
    NodeLabelRequirement,
    NodeProfile,
    RawDependency,
    Substitution,
    Template,
    TemplateConfig,
)
from flux_template.validation import (
    ErrorKind,
    detect_cycles,
    validate,
    validate_cluster,
)


def _cluster(*template_names: str) -> Cluster:
    return Cluster(
        name="c", templates=[TemplateConfig(name=name) for name in template_names]
    )


def test_local_dependency_valid(
    prod: Cluster, templates: list[Template], profiles: dict[str, NodeProfile]
) -> None:
    """Test a dependency on a unit of the same template."""
    enabled = resolve_enabled(prod, templates)
    assert validate(enabled, templates) == []
    assert validate_cluster(prod, templates, profiles) == []


def test_qualified_dependency_valid(
    staging: Cluster, templates: list[Template]
) -> None:
    """Test a dependency on a unit of another enabled template."""
    enabled = resolve_enabled(staging, templates)
    assert validate(enabled, templates) == []
    assert validate_cluster(staging, templates) == []


def test_dependency_on_disabled_template() -> None:
    """Test a dependency on a template the cluster does not list."""
    web = Template(
        name="web",
        kustomizations=[
            Kustomization(name="app", path="./app", depends_on=["auth/login"])
        ],
    )
    auth = Template(name="auth", kustomizations=[Kustomization(name="login", path=".")])
    enabled = resolve_enabled(_cluster("web"), [web, auth])

    errors = validate(enabled, [web, auth])
    assert len(errors) == 1
    error = errors[0]
    assert error.kind == ErrorKind.MISSING_DEPENDENCY
    assert error.source == "web/app"
    assert error.target == "auth/login"
    assert "enable template 'auth'" in error.message


def test_dependency_on_unknown_unit() -> None:
    """Test a dependency that no template provides."""
    web = Template(
        name="web",
        kustomizations=[Kustomization(name="app", path="./app", depends_on=["cache"])],
    )
    enabled = resolve_enabled(_cluster("web"), [web])
    errors = validate(enabled, [web])
    assert len(errors) == 1
    assert errors[0].target == "web/cache"
    assert "does not exist in any template" in errors[0].message


def test_errors_reported_in_batch() -> None:
    """Test every unresolved reference is reported."""
    web = Template(
        name="web",
        kustomizations=[
            Kustomization(
                name="app",
                path="./app",
                depends_on=[
                    "auth/login",
                    "metrics/agent",
                    "app",
                    "a/b/c",
                    RawDependency(name="infra", namespace="flux-system"),
                ],
            ),
            Kustomization(name="db", path="./db", depends_on=["auth/login"]),
        ],
    )
    enabled = resolve_enabled(_cluster("web"), [web])
    errors = validate(enabled)
    assert [(e.kind, e.source, e.target) for e in errors] == [
        (ErrorKind.MISSING_DEPENDENCY, "web/app", "auth/login"),
        (ErrorKind.MISSING_DEPENDENCY, "web/app", "metrics/agent"),
        (ErrorKind.SELF_REFERENCE, "web/app", "web/app"),
        (ErrorKind.INVALID_REFERENCE, "web/app", "a/b/c"),
        (ErrorKind.MISSING_DEPENDENCY, "web/db", "auth/login"),
    ]


def test_cycles_allowed_by_default() -> None:
    """Test cycle detection only runs when enabled."""
    web = Template(
        name="web",
        kustomizations=[
            Kustomization(name="a", path="./a", depends_on=["b"]),
            Kustomization(name="b", path="./b", depends_on=["a"]),
        ],
    )
    enabled = resolve_enabled(_cluster("web"), [web])
    assert validate(enabled) == []

    errors = validate(enabled, options=ValidationOptions(detect_cycles=True))
    assert len(errors) == 1
    assert errors[0].kind == ErrorKind.CYCLE
    assert errors[0].message == "Dependency cycle detected: web/a -> web/b -> web/a"


def test_detect_cycles() -> None:
    """Test the cycle search on a raw graph."""
    assert detect_cycles({"a/x": ["a/y"], "a/y": ["a/z"], "a/z": []}) == []
    assert detect_cycles({"a/x": ["a/y"], "a/y": ["a/z"], "a/z": ["a/y"]}) == [
        ["a/y", "a/z", "a/y"]
    ]


def test_validate_cluster_references() -> None:
    """Test the cluster's references to templates, units and profiles."""
    web = Template(
        name="web",
        kustomizations=[
            Kustomization(
                name="app",
                path="./app",
                substitutions=[Substitution(name="domain")],
            )
        ],
    )
    cluster = Cluster(
        name="c",
        nodes=["gpu"],
        templates=[
            TemplateConfig(
                name="web",
                kustomizations={"api": KustomizationOverride(values={"x": "1"})},
            ),
            TemplateConfig(name="missing"),
        ],
    )
    errors = validate_cluster(cluster, [web])
    assert [(e.kind, e.target) for e in errors] == [
        (ErrorKind.MISSING_PROFILE, "gpu"),
        (ErrorKind.INVALID_OVERRIDE, "web/api"),
        (ErrorKind.MISSING_SUBSTITUTION, "domain"),
        (ErrorKind.MISSING_TEMPLATE, "missing"),
    ]


def test_external_values_satisfy_required() -> None:
    """Test provider values count towards required substitutions."""
    web = Template(
        name="web",
        kustomizations=[
            Kustomization(
                name="app",
                path="./app",
                substitutions=[Substitution(name="password")],
            )
        ],
    )
    cluster = _cluster("web")
    assert validate_cluster(cluster, [web], external={"password": "secret"}) == []


def test_node_label_requirements() -> None:
    """Test templates needing node labels are checked against the node profiles."""
    gpu = NodeProfile(name="gpu", labels={"gpu": "a100", "zone": "eu-1"})
    workers = NodeProfile(name="workers", labels={"zone": "eu-1"})
    template = Template(
        name="ml",
        kustomizations=[Kustomization(name="train", path="./train")],
        requirements=[
            NodeLabelRequirement(key="zone", at_least=3),
            NodeLabelRequirement(key="gpu", value="a100", at_least=2),
            NodeLabelRequirement(key="gpu", value="h100"),
        ],
    )
    cluster = Cluster(
        name="c",
        nodes=["gpu", "workers", "gpu"],
        templates=[TemplateConfig(name="ml")],
    )
    profiles = {"gpu": gpu, "workers": workers}
    errors = validate_cluster(cluster, [template], profiles)
    assert [(error.kind, error.target) for error in errors] == [
        (ErrorKind.UNMET_REQUIREMENT, "ml"),
    ]
    assert errors[0].message == (
        "Template 'ml' requires at least 1 node(s) with label 'gpu=h100', "
        "but cluster 'c' has 0"
    )


def test_requirements_of_disabled_template_ignored() -> None:
    """Test only templates the cluster enables need their node labels."""
    template = Template(
        name="ml",
        kustomizations=[Kustomization(name="train", path="./train")],
        requirements=[NodeLabelRequirement(key="gpu")],
    )
    assert validate_cluster(Cluster(name="c"), [template]) == []
