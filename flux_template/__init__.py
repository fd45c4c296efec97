"""flux-template compiles cluster configuration into Flux resources.

A cluster opts into templates, each a list of deployable units. The library
resolves which units are deployed, the substitution values each receives and
validates their dependencies before rendering one Flux Kustomization per unit.
Templates are fetched from git, http or OCI sources into a local cache.
"""

__all__ = [
    "compiler",
    "config",
    "context",
    "enablement",
    "exceptions",
    "loader",
    "manifest",
    "node_id",
    "pipeline",
    "plugins",
    "source",
    "substitution",
    "validation",
]
