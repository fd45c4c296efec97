"""Resolve which templates and units are deployed to a cluster.

Templates are opt-in: only those listed in the cluster are enabled and every
unit of an enabled template is deployed.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
import logging

from .manifest import Cluster, Kustomization, Template
from .node_id import NodeID, make_id

__all__ = [
    "EnabledSet",
    "EnabledUnit",
    "resolve_enabled",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnabledUnit:
    """A unit that will be deployed, along with its owning template."""

    template: Template
    kustomization: Kustomization

    @property
    def node_id(self) -> NodeID:
        return make_id(self.template.name, self.kustomization.name)


class EnabledSet:
    """The NodeIDs deployed for a cluster.

    Iteration follows template declaration order and then unit order
    within each template.
    """

    def __init__(self, units: Iterable[EnabledUnit]) -> None:
        """Initialize EnabledSet."""
        self._units = tuple(units)
        self._ids = frozenset(unit.node_id for unit in self._units)

    @property
    def units(self) -> tuple[EnabledUnit, ...]:
        return self._units

    @property
    def ids(self) -> frozenset[NodeID]:
        return self._ids

    @property
    def template_names(self) -> list[str]:
        """Names of the enabled templates in declaration order."""
        names: list[str] = []
        for unit in self._units:
            if unit.template.name not in names:
                names.append(unit.template.name)
        return names

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._ids

    def __iter__(self) -> Iterator[NodeID]:
        return (unit.node_id for unit in self._units)

    def __len__(self) -> int:
        return len(self._units)

    def __repr__(self) -> str:
        return f"EnabledSet({[str(node_id) for node_id in self]})"


def resolve_enabled(cluster: Cluster, templates: Iterable[Template]) -> EnabledSet:
    """Return the set of units enabled for the cluster."""
    listed = {template_config.name for template_config in cluster.templates}
    units: list[EnabledUnit] = []
    for template in templates:
        if template.name not in listed:
            _LOGGER.debug(
                "Template %s not listed by cluster %s, skipping",
                template.name,
                cluster.name,
            )
            continue
        units.extend(EnabledUnit(template, ks) for ks in template.kustomizations)
    _LOGGER.debug("Cluster %s has %d enabled units", cluster.name, len(units))
    return EnabledSet(units)
