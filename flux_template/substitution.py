"""Resolve the substitution values handed to each deployed unit.

Values are merged from several scopes, lowest precedence first:

1. Built-in defaults and the defaults declared by the unit's substitutions
2. Cluster defaults: values from substitution providers, `spec.defaults`
   and then `spec.values`
3. Values of the node profiles that apply to the unit
4. The cluster's overrides for the template
5. The cluster's overrides for the individual unit

A key set in a later scope always replaces the earlier value.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import logging

from .enablement import EnabledSet
from .manifest import Cluster, Kustomization, NodeProfile, Template, stringify_value
from .node_id import NodeID

__all__ = [
    "SCHEMA_DEFAULTS",
    "FLUX_NAMESPACE_KEY",
    "REGISTRY_SECRET_KEY",
    "ResolvedDefaults",
    "resolve_defaults",
    "resolve_substitutions",
    "resolve_all_substitutions",
    "missing_substitutions",
]

_LOGGER = logging.getLogger(__name__)

FLUX_NAMESPACE_KEY = "flux_namespace"
REGISTRY_SECRET_KEY = "oci_registry_secret_name"

SCHEMA_DEFAULTS: Mapping[str, str] = {
    FLUX_NAMESPACE_KEY: "flux-system",
    "oci_repository_name": "flux-template-oci",
    REGISTRY_SECRET_KEY: "flux-template-oci-registry",
    "flux_reconciliation_interval": "10m",
    "flux_reconciliation_timeout": "5m",
}

# Keys injected into every unit's substitutions. These may never resolve to an
# empty string since generated resources reference them as namespaces/names.
GUARANTEED_KEYS = (FLUX_NAMESPACE_KEY, REGISTRY_SECRET_KEY)


@dataclass(frozen=True)
class ResolvedDefaults:
    """Cluster defaults with every value filled in."""

    flux_namespace: str
    oci_repository_name: str
    oci_registry_secret_name: str
    flux_reconciliation_interval: str
    flux_reconciliation_timeout: str


def resolve_defaults(cluster: Cluster) -> ResolvedDefaults:
    """Resolve the cluster's defaults, falling back to the built-in ones."""
    values = {
        key: getattr(cluster.defaults, key) or fallback
        for key, fallback in SCHEMA_DEFAULTS.items()
    }
    return ResolvedDefaults(**values)


def _cluster_default_values(cluster: Cluster) -> dict[str, str]:
    return {
        key: value
        for key in GUARANTEED_KEYS
        if (value := getattr(cluster.defaults, key))
    }


def _profile_values(
    cluster: Cluster,
    unit: Kustomization,
    profiles: Mapping[str, NodeProfile],
) -> Iterable[Mapping[str, str]]:
    """Yield the values of each node profile applying to the unit, in cluster order."""
    for profile_name in cluster.nodes:
        if unit.node_profiles is not None and profile_name not in unit.node_profiles:
            continue
        if (profile := profiles.get(profile_name)) is None:
            # Reported by validate_cluster
            continue
        yield profile.values


def resolve_substitutions(
    cluster: Cluster,
    template: Template,
    unit: Kustomization,
    profiles: Mapping[str, NodeProfile] | None = None,
    external: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the final substitution values for a unit.

    Args:
        cluster: The cluster the unit is deployed to
        template: The template owning the unit
        unit: The unit to resolve
        profiles: Node profiles by name
        external: Values contributed by substitution provider plugins

    Returns:
        dict: Every key from every scope mapped to a string, sorted by key.
    """
    scopes: list[Mapping[str, str]] = [
        {key: SCHEMA_DEFAULTS[key] for key in GUARANTEED_KEYS},
        {
            sub.name: sub.default
            for sub in unit.substitutions
            if sub.default is not None
        },
        external or {},
        _cluster_default_values(cluster),
        cluster.values,
    ]
    scopes.extend(_profile_values(cluster, unit, profiles or {}))
    if template_config := cluster.get_template_config(template.name):
        scopes.append(template_config.values)
        if override := template_config.kustomizations.get(unit.name):
            scopes.append(override.values)

    values: dict[str, str] = {}
    for scope in scopes:
        for key, value in scope.items():
            values[key] = stringify_value(value)
    for key in GUARANTEED_KEYS:
        if not values.get(key):
            values[key] = SCHEMA_DEFAULTS[key]
    return dict(sorted(values.items()))


def resolve_all_substitutions(
    cluster: Cluster,
    enabled: EnabledSet,
    profiles: Mapping[str, NodeProfile] | None = None,
    external: Mapping[str, str] | None = None,
) -> dict[NodeID, dict[str, str]]:
    """Resolve substitutions for every enabled unit."""
    result = {
        unit.node_id: resolve_substitutions(
            cluster, unit.template, unit.kustomization, profiles, external
        )
        for unit in enabled.units
    }
    _LOGGER.debug("Resolved substitutions for %d units", len(result))
    return result


def missing_substitutions(unit: Kustomization, values: Mapping[str, str]) -> list[str]:
    """Return the unit's required substitutions that have no value."""
    return [
        sub.name
        for sub in unit.substitutions
        if sub.required and sub.name not in values
    ]
