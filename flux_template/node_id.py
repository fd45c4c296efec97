"""Canonical identity of deployable units.

Every unit is identified by a NodeID of the form `template/unit`. Units
reference each other in `depends_on` either locally by bare unit name, which
resolves within the owning template, or fully qualified as `template/unit`.
"""

from typing import NewType

from .exceptions import InvalidReferenceError
from .manifest import ID_SEPARATOR, RawDependency

__all__ = [
    "NodeID",
    "make_id",
    "split_id",
    "parse_dependency",
]

NodeID = NewType("NodeID", str)


def make_id(template_name: str, unit_name: str) -> NodeID:
    """Return the NodeID for a unit of a template."""
    return NodeID(f"{template_name}{ID_SEPARATOR}{unit_name}")


def split_id(node_id: NodeID) -> tuple[str, str]:
    """Return the (template, unit) pair a NodeID was built from."""
    template_name, _, unit_name = node_id.partition(ID_SEPARATOR)
    return template_name, unit_name


def parse_dependency(
    raw_ref: str | RawDependency, owning_template_name: str
) -> NodeID | None:
    """Resolve a dependency reference declared in `owning_template_name`.

    Raw dependencies refer to resources outside of any template and return
    None; they do not take part in dependency validation.

    Raises:
        InvalidReferenceError: If the reference is empty or has more than
            one separator.
    """
    if isinstance(raw_ref, RawDependency):
        return None
    ref = raw_ref.strip()
    if not ref:
        raise InvalidReferenceError(raw_ref, "Empty dependency reference")
    parts = ref.split(ID_SEPARATOR)
    if len(parts) == 1:
        return make_id(owning_template_name, ref)
    if len(parts) == 2 and all(parts):
        return NodeID(ref)
    raise InvalidReferenceError(
        raw_ref,
        f"Invalid dependency reference '{raw_ref}': expected 'kustomization' "
        "or 'template/kustomization'",
    )
