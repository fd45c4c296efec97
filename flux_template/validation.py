"""Validation of the dependency graph of the units deployed to a cluster.

Validation never stops at the first problem. Every check appends to a list of
`ValidationError` records which is returned to the caller, and an empty list
means the configuration is deployable.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum, StrEnum
import logging

from .config import ValidationOptions
from .enablement import EnabledSet
from .exceptions import InvalidReferenceError
from .manifest import Cluster, NodeProfile, Template
from .node_id import NodeID, make_id, parse_dependency, split_id
from .substitution import missing_substitutions, resolve_substitutions

__all__ = [
    "ErrorKind",
    "ValidationError",
    "validate",
    "validate_cluster",
    "detect_cycles",
]

_LOGGER = logging.getLogger(__name__)


class ErrorKind(StrEnum):
    """The kind of problem a ValidationError reports."""

    MISSING_DEPENDENCY = "missing_dependency"
    SELF_REFERENCE = "self_reference"
    INVALID_REFERENCE = "invalid_reference"
    CYCLE = "cycle"
    MISSING_TEMPLATE = "missing_template"
    INVALID_OVERRIDE = "invalid_override"
    MISSING_SUBSTITUTION = "missing_substitution"
    MISSING_PROFILE = "missing_profile"
    UNMET_REQUIREMENT = "unmet_requirement"
    PLUGIN = "plugin"


@dataclass(frozen=True)
class ValidationError:
    """A single problem found while validating a cluster."""

    kind: ErrorKind
    source: str
    """The NodeID (or cluster name) where the problem was found."""

    message: str
    target: str | None = None
    """The NodeID or name that could not be resolved, if any."""


def _missing_dependency(source: NodeID, target: NodeID) -> ValidationError:
    template_name, _ = split_id(target)
    return ValidationError(
        kind=ErrorKind.MISSING_DEPENDENCY,
        source=source,
        target=target,
        message=(
            f"Kustomization '{source}' depends on '{target}' which is not "
            f"deployed to this cluster; enable template '{template_name}' "
            "or remove the dependency"
        ),
    )


def _resolve_edges(
    enabled: EnabledSet,
) -> tuple[dict[NodeID, list[NodeID]], list[ValidationError]]:
    """Resolve each enabled unit's dependencies to NodeIDs.

    Returns the edges to other enabled units along with the errors for every
    reference that could not be resolved.
    """
    edges: dict[NodeID, list[NodeID]] = {}
    errors: list[ValidationError] = []
    for unit in enabled.units:
        node_id = unit.node_id
        targets: list[NodeID] = []
        for dep in unit.kustomization.depends_on:
            try:
                target = parse_dependency(dep, unit.template.name)
            except InvalidReferenceError as err:
                errors.append(
                    ValidationError(
                        kind=ErrorKind.INVALID_REFERENCE,
                        source=node_id,
                        target=err.reference,
                        message=f"Kustomization '{node_id}': {err}",
                    )
                )
                continue
            if target is None:
                continue
            if target == node_id:
                errors.append(
                    ValidationError(
                        kind=ErrorKind.SELF_REFERENCE,
                        source=node_id,
                        target=target,
                        message=f"Kustomization '{node_id}' cannot depend on itself",
                    )
                )
                continue
            if target not in enabled:
                errors.append(_missing_dependency(node_id, target))
                continue
            targets.append(target)
        edges[node_id] = targets
    return edges, errors


class _Visit(Enum):
    VISITING = 1
    VISITED = 2


def detect_cycles(edges: Mapping[NodeID, Iterable[NodeID]]) -> list[list[NodeID]]:
    """Return every dependency cycle found by a depth first search.

    Each cycle is reported as the path of NodeIDs starting and ending at the
    same node.
    """
    state: dict[NodeID, _Visit] = {}
    cycles: list[list[NodeID]] = []

    def visit(node_id: NodeID, path: list[NodeID]) -> None:
        state[node_id] = _Visit.VISITING
        path.append(node_id)
        for dep_id in edges.get(node_id, ()):
            dep_state = state.get(dep_id)
            if dep_state is _Visit.VISITING:
                cycles.append(path[path.index(dep_id) :] + [dep_id])
            elif dep_state is None:
                visit(dep_id, path)
        path.pop()
        state[node_id] = _Visit.VISITED

    for node_id in edges:
        if node_id not in state:
            visit(node_id, [])
    return cycles


def validate(
    enabled: EnabledSet,
    templates: Iterable[Template] = (),
    options: ValidationOptions | None = None,
) -> list[ValidationError]:
    """Check every dependency of every enabled unit resolves to an enabled unit.

    The `templates` argument is the full loaded set; it is used to tell the
    operator whether a missing target exists in a template that is not
    enabled or does not exist at all.
    """
    options = options or ValidationOptions()
    edges, errors = _resolve_edges(enabled)

    known: set[NodeID] = set()
    for template in templates:
        for ks in template.kustomizations:
            known.add(make_id(template.name, ks.name))
    if known:
        errors = [
            _unknown_target(error)
            if error.kind == ErrorKind.MISSING_DEPENDENCY and error.target not in known
            else error
            for error in errors
        ]

    if options.detect_cycles:
        for cycle in detect_cycles(edges):
            errors.append(
                ValidationError(
                    kind=ErrorKind.CYCLE,
                    source=cycle[0],
                    target=cycle[-2],
                    message="Dependency cycle detected: " + " -> ".join(cycle),
                )
            )

    for error in errors:
        _LOGGER.debug("Validation error: %s", error.message)
    return errors


def _unknown_target(error: ValidationError) -> ValidationError:
    """Reword a missing dependency whose target exists in no template."""
    return ValidationError(
        kind=error.kind,
        source=error.source,
        target=error.target,
        message=(
            f"Kustomization '{error.source}' depends on '{error.target}' which "
            "does not exist in any template"
        ),
    )


def _check_requirements(
    cluster: Cluster, template: Template, profiles: Mapping[str, NodeProfile]
) -> list[ValidationError]:
    """Check the cluster has enough nodes carrying each label the template needs.

    Every entry of `cluster.nodes` is one node labelled by its profile.
    """
    nodes = [profiles[name] for name in cluster.nodes if name in profiles]
    errors = []
    for requirement in template.requirements:
        found = sum(1 for node in nodes if requirement.matches(node.labels))
        if found < requirement.at_least:
            errors.append(
                ValidationError(
                    kind=ErrorKind.UNMET_REQUIREMENT,
                    source=cluster.name,
                    target=template.name,
                    message=(
                        f"Template '{template.name}' requires at least "
                        f"{requirement.at_least} node(s) with label "
                        f"'{requirement}', but cluster '{cluster.name}' has {found}"
                    ),
                )
            )
    return errors


def validate_cluster(
    cluster: Cluster,
    templates: Iterable[Template],
    profiles: Mapping[str, NodeProfile] | None = None,
    external: Mapping[str, str] | None = None,
) -> list[ValidationError]:
    """Check the references a cluster makes to templates, units and profiles.

    Node label requirements of each enabled template are checked against the
    labels of the cluster's node profiles.

    Required substitutions are checked against the same scopes the compiler
    uses, including `external` provider values.
    """
    errors: list[ValidationError] = []
    by_name = {template.name: template for template in templates}
    profiles = profiles or {}

    for profile_name in cluster.nodes:
        if profile_name not in profiles:
            errors.append(
                ValidationError(
                    kind=ErrorKind.MISSING_PROFILE,
                    source=cluster.name,
                    target=profile_name,
                    message=(
                        f"Cluster '{cluster.name}' references node profile "
                        f"'{profile_name}' which does not exist"
                    ),
                )
            )

    for template_config in cluster.templates:
        if (template := by_name.get(template_config.name)) is None:
            errors.append(
                ValidationError(
                    kind=ErrorKind.MISSING_TEMPLATE,
                    source=cluster.name,
                    target=template_config.name,
                    message=(
                        f"Cluster '{cluster.name}' references template "
                        f"'{template_config.name}' which does not exist"
                    ),
                )
            )
            continue
        errors.extend(_check_requirements(cluster, template, profiles))
        for override_name in template_config.kustomizations:
            if template.get_kustomization(override_name) is None:
                errors.append(
                    ValidationError(
                        kind=ErrorKind.INVALID_OVERRIDE,
                        source=cluster.name,
                        target=f"{template.name}/{override_name}",
                        message=(
                            f"Cluster '{cluster.name}', template '{template.name}': "
                            f"kustomization override '{override_name}' does not "
                            "match any kustomization in the template"
                        ),
                    )
                )
        for ks in template.kustomizations:
            values = resolve_substitutions(
                cluster, template, ks, profiles, external
            )
            for name in missing_substitutions(ks, values):
                errors.append(
                    ValidationError(
                        kind=ErrorKind.MISSING_SUBSTITUTION,
                        source=f"{template.name}/{ks.name}",
                        target=name,
                        message=(
                            f"Cluster '{cluster.name}', kustomization "
                            f"'{template.name}/{ks.name}': required substitution "
                            f"'{name}' has no value or default"
                        ),
                    )
                )
    return errors
