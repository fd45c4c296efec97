"""Tests for the substitution library."""

from flux_template.enablement import resolve_enabled
from flux_template.manifest import (
    Cluster,
    ClusterDefaults,
    Kustomization,
    KustomizationOverride,
    NodeProfile,
    Substitution,
    Template,
    TemplateConfig,
)
from flux_template.substitution import (
    missing_substitutions,
    resolve_all_substitutions,
    resolve_defaults,
    resolve_substitutions,
)


def test_precedence(
    prod: Cluster, templates: list[Template], profiles: dict[str, NodeProfile]
) -> None:
    """Test each scope overrides the scopes below it."""
    web = templates[0]
    app = web.get_kustomization("app")
    assert app
    assert resolve_substitutions(prod, web, app, profiles) == {
        "domain": "example.com",
        "flux_namespace": "flux-system",
        "oci_registry_secret_name": "flux-template-oci-registry",
        "replicas": "5",
        "storage_class": "fast-ssd",
    }

    db = web.get_kustomization("db")
    assert db
    assert resolve_substitutions(prod, web, db, profiles) == {
        "domain": "example.com",
        "flux_namespace": "flux-system",
        "oci_registry_secret_name": "flux-template-oci-registry",
        "replicas": "3",
        "storage_class": "fast-ssd",
        "storage_size": "10Gi",
    }


def test_guaranteed_namespace_fallback() -> None:
    """Test the namespace is filled in with no cluster or profile value."""
    unit = Kustomization(name="app", path="./app")
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(name="c", templates=[TemplateConfig(name="web")])
    values = resolve_substitutions(cluster, template, unit)
    assert values["flux_namespace"] == "flux-system"
    assert values["oci_registry_secret_name"] == "flux-template-oci-registry"


def test_every_unit_gets_namespace(
    staging: Cluster, templates: list[Template]
) -> None:
    """Test every enabled unit receives the namespace key."""
    enabled = resolve_enabled(staging, templates)
    result = resolve_all_substitutions(staging, enabled)
    assert list(result) == ["web/db", "web/app", "auth/login"]
    for values in result.values():
        assert values["flux_namespace"] == "flux-system"


def test_empty_namespace_replaced() -> None:
    """Test an empty value never replaces the guaranteed keys."""
    unit = Kustomization(name="app", path="./app")
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(
        name="c",
        values={"flux_namespace": ""},
        templates=[TemplateConfig(name="web")],
    )
    values = resolve_substitutions(cluster, template, unit)
    assert values["flux_namespace"] == "flux-system"


def test_cluster_default_namespace() -> None:
    """Test the cluster defaults set the flux namespace."""
    unit = Kustomization(name="app", path="./app")
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(
        name="c",
        defaults=ClusterDefaults(flux_namespace="gitops"),
        templates=[TemplateConfig(name="web")],
    )
    assert resolve_substitutions(cluster, template, unit)["flux_namespace"] == "gitops"
    assert resolve_defaults(cluster).flux_namespace == "gitops"
    assert resolve_defaults(cluster).flux_reconciliation_interval == "10m"


def test_external_values_rank_below_cluster() -> None:
    """Test provider values are overridden by values written in the cluster."""
    unit = Kustomization(name="app", path="./app")
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(
        name="c",
        values={"password": "from-cluster"},
        templates=[TemplateConfig(name="web")],
    )
    external = {"password": "from-provider", "token": "abc"}
    values = resolve_substitutions(cluster, template, unit, external=external)
    assert values["password"] == "from-cluster"
    assert values["token"] == "abc"


def test_node_profile_restriction() -> None:
    """Test a unit may limit the node profiles applied to it."""
    unit = Kustomization(name="app", path="./app", node_profiles=["gpu"])
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(
        name="c", nodes=["workers", "gpu"], templates=[TemplateConfig(name="web")]
    )
    profiles = {
        "workers": NodeProfile(name="workers", values={"pool": "workers"}),
        "gpu": NodeProfile(name="gpu", values={"accelerator": "nvidia"}),
    }
    values = resolve_substitutions(cluster, template, unit, profiles)
    assert values["accelerator"] == "nvidia"
    assert "pool" not in values


def test_later_profile_wins() -> None:
    """Test profiles are applied in the order the cluster lists them."""
    unit = Kustomization(name="app", path="./app")
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(
        name="c", nodes=["a", "b"], templates=[TemplateConfig(name="web")]
    )
    profiles = {
        "a": NodeProfile(name="a", values={"zone": "a"}),
        "b": NodeProfile(name="b", values={"zone": "b"}),
    }
    assert resolve_substitutions(cluster, template, unit, profiles)["zone"] == "b"


def test_unit_override_scoped_to_unit() -> None:
    """Test a unit override does not leak to other units."""
    app = Kustomization(name="app", path="./app")
    db = Kustomization(name="db", path="./db")
    template = Template(name="web", kustomizations=[app, db])
    cluster = Cluster(
        name="c",
        templates=[
            TemplateConfig(
                name="web",
                values={"size": "small"},
                kustomizations={"app": KustomizationOverride(values={"size": "big"})},
            )
        ],
    )
    assert resolve_substitutions(cluster, template, app)["size"] == "big"
    assert resolve_substitutions(cluster, template, db)["size"] == "small"


def test_deterministic_order() -> None:
    """Test the resolved values are sorted by key."""
    unit = Kustomization(name="app", path="./app")
    template = Template(name="web", kustomizations=[unit])
    cluster = Cluster(
        name="c", values={"zz": "1", "aa": "2"}, templates=[TemplateConfig(name="web")]
    )
    values = resolve_substitutions(cluster, template, unit)
    assert list(values) == sorted(values)


def test_missing_substitutions() -> None:
    """Test required substitutions without a value are reported."""
    unit = Kustomization(
        name="app",
        path="./app",
        substitutions=[
            Substitution(name="domain"),
            Substitution(name="replicas", default="1"),
        ],
    )
    assert missing_substitutions(unit, {"replicas": "1"}) == ["domain"]
    assert missing_substitutions(unit, {"domain": "x", "replicas": "1"}) == []
