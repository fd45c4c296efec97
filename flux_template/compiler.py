"""Compile enabled units into Flux resources.

The compiler is a rendering step over validated input: it does not check
dependencies again, and an input that breaks that contract raises
`CompileError` rather than producing a malformed resource.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
import logging
from typing import Any, ClassVar

import yaml

from .config import CompilerConfig
from .enablement import EnabledSet, EnabledUnit
from .exceptions import CompileError, InvalidReferenceError
from .manifest import (
    GIT_REPOSITORY,
    KUSTOMIZE_KIND,
    OCI_REPOSITORY,
    BaseManifest,
    Cluster,
    FluxConfig,
    Kustomization,
    NamedResource,
    PreservationPolicy,
    RawDependency,
    Template,
)
from .node_id import NodeID, parse_dependency, split_id
from .substitution import FLUX_NAMESPACE_KEY, ResolvedDefaults, resolve_defaults

__all__ = [
    "CompiledResource",
    "NamespaceResource",
    "SourceRepository",
    "PatchOperation",
    "ControllerPatch",
    "CompileResult",
    "compile_namespaces",
    "compile_resources",
    "compile_source_repository",
    "compile_controller_patches",
    "flux_name",
    "is_system_namespace",
    "resolve_preservation",
]

_LOGGER = logging.getLogger(__name__)

FLUXTOMIZE_API_VERSION = "kustomize.toolkit.fluxcd.io/v1"
SOURCE_API_VERSION = "source.toolkit.fluxcd.io/v1"
DEFAULT_HEALTH_CHECK_API_VERSION = "apps/v1"
FLUX_CONTROLLERS = ("kustomize-controller", "helm-controller", "source-controller")
CONTROLLER_ARGS_PATH = "/spec/template/spec/containers/0/args/-"
KUSTOMIZE_CONFIG_API_VERSION = "kustomize.config.k8s.io/v1beta1"
FLUX_SYSTEM_RESOURCES = ("gotk-components.yaml", "gotk-sync.yaml")
SYSTEM_NAMESPACES = frozenset(
    {"default", "flux-system", "kube-system", "kube-public", "kube-node-lease"}
)
PRESERVE_LABEL = "flux-template.io/preserve"
PRUNE_ANNOTATION = "kustomize.toolkit.fluxcd.io/prune"


def flux_name(template_name: str, unit_name: str) -> str:
    """Return the Flux Kustomization name for a unit."""
    return f"{template_name}-{unit_name}"


def _flux_path(config: CompilerConfig, template_name: str, unit_path: str) -> str:
    normalized = unit_path.removeprefix("./").strip("/")
    if template_path := config.template_paths.get(template_name):
        base = template_path.rstrip("/")
    else:
        base = f"{config.template_base_path.rstrip('/')}/{template_name}"
    if not normalized or normalized == ".":
        return base
    return f"{base}/{normalized}"


@dataclass(frozen=True)
class HealthCheckRef(BaseManifest):
    """A resource Flux checks after applying a Kustomization."""

    api_version: str
    kind: str
    name: str
    namespace: str


@dataclass(frozen=True)
class CustomHealthCheckRef(BaseManifest):
    """CEL expressions Flux evaluates against every resource of a kind."""

    api_version: str
    kind: str
    namespace: str
    current: str | None = None
    failed: str | None = None


def _preservation_patch(kind: str) -> dict[str, Any]:
    """Return a patch marking every resource of the kind as kept on removal."""
    patch = {
        "apiVersion": "v1",
        "kind": kind,
        "metadata": {
            "name": "not-used",
            "labels": {PRESERVE_LABEL: "true"},
            "annotations": {PRUNE_ANNOTATION: "disabled"},
        },
    }
    return {"patch": yaml.dump(patch, sort_keys=False), "target": {"kind": kind}}


@dataclass(frozen=True)
class CompiledResource(BaseManifest):
    """A Flux Kustomization generated for one enabled unit."""

    kind: ClassVar[str] = KUSTOMIZE_KIND

    name: str
    namespace: str
    """The Flux namespace the Kustomization object lives in."""

    path: str
    target_namespace: str
    source_ref: NamedResource
    depends_on: list[NamedResource] = field(default_factory=list)
    substitute: dict[str, str] = field(default_factory=dict)
    health_checks: list[HealthCheckRef] = field(default_factory=list)
    custom_health_checks: list[CustomHealthCheckRef] = field(default_factory=list)
    preserved_kinds: list[str] = field(default_factory=list)
    """Resource kinds that stay in the cluster when the unit is removed."""

    prune: bool = True
    wait: bool = True
    interval: str | None = None
    timeout: str | None = None
    retry_interval: str | None = None

    node_id: str | None = field(metadata={"serialize": "omit"}, default=None)
    """The unit this resource was compiled from."""

    def manifest(self) -> dict[str, Any]:
        """Return the Flux Kustomization document."""
        spec: dict[str, Any] = {
            "interval": self.interval,
            "targetNamespace": self.target_namespace,
            "path": self.path,
            "prune": self.prune,
            "wait": self.wait,
            "timeout": self.timeout,
            "retryInterval": self.retry_interval,
            "sourceRef": {
                "kind": self.source_ref.kind,
                "name": self.source_ref.name,
                "namespace": self.source_ref.namespace,
            },
        }
        if self.depends_on:
            spec["dependsOn"] = [
                {"name": dep.name, "namespace": dep.namespace}
                for dep in self.depends_on
            ]
        if self.substitute:
            spec["postBuild"] = {"substitute": dict(self.substitute)}
        if self.health_checks:
            spec["healthChecks"] = [
                {
                    "apiVersion": check.api_version,
                    "kind": check.kind,
                    "name": check.name,
                    "namespace": check.namespace,
                }
                for check in self.health_checks
            ]
        if self.custom_health_checks:
            spec["customHealthChecks"] = [
                {
                    key: value
                    for key, value in {
                        "apiVersion": check.api_version,
                        "kind": check.kind,
                        "namespace": check.namespace,
                        "current": check.current,
                        "failed": check.failed,
                    }.items()
                    if value is not None
                }
                for check in self.custom_health_checks
            ]
        if self.preserved_kinds:
            spec["patches"] = [
                _preservation_patch(kind) for kind in self.preserved_kinds
            ]
        return {
            "apiVersion": FLUXTOMIZE_API_VERSION,
            "kind": KUSTOMIZE_KIND,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {key: value for key, value in spec.items() if value is not None},
        }


@dataclass(frozen=True)
class SourceRepository(BaseManifest):
    """The OCIRepository Flux watches for the cluster's artifacts."""

    kind: ClassVar[str] = OCI_REPOSITORY

    name: str
    namespace: str
    url: str
    ref: dict[str, str]
    interval: str
    provider: str = "generic"
    secret_ref: str | None = None
    insecure: bool = False

    def manifest(self) -> dict[str, Any]:
        """Return the Flux OCIRepository document."""
        spec: dict[str, Any] = {
            "interval": self.interval,
            "url": self.url,
            "ref": dict(self.ref),
            "provider": self.provider,
        }
        if self.secret_ref:
            spec["secretRef"] = {"name": self.secret_ref}
        if self.insecure:
            spec["insecure"] = True
        return {
            "apiVersion": SOURCE_API_VERSION,
            "kind": OCI_REPOSITORY,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": spec,
        }


@dataclass(frozen=True)
class PatchOperation(BaseManifest):
    """A JSON patch operation."""

    op: str
    path: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in ("add", "remove", "replace"):
            raise ValueError(f"Unsupported patch operation '{self.op}'")


@dataclass(frozen=True)
class ControllerPatch(BaseManifest):
    """JSON patch operations applied to one of the Flux controllers."""

    target: NamedResource
    operations: list[PatchOperation]

    @property
    def patch(self) -> str:
        """The operations serialized as a JSON patch document."""
        return json.dumps(
            [
                {"op": op.op, "path": op.path, "value": op.value}
                if op.op != "remove"
                else {"op": op.op, "path": op.path}
                for op in self.operations
            ]
        )

    def manifest(self) -> dict[str, Any]:
        """Return the kustomize `patches` entry."""
        return {
            "patch": self.patch,
            "target": {"kind": self.target.kind, "name": self.target.name},
        }


@dataclass(frozen=True)
class NamespaceResource(BaseManifest):
    """A Namespace the enabled units deploy into."""

    kind: ClassVar[str] = "Namespace"

    name: str
    labels: dict[str, str] = field(default_factory=dict)

    def manifest(self) -> dict[str, Any]:
        """Return the Namespace document."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        return {"apiVersion": "v1", "kind": "Namespace", "metadata": metadata}


@dataclass
class CompileResult:
    """All resources generated for a cluster."""

    cluster: str
    resources: list[CompiledResource]
    source_repository: SourceRepository | None = None
    patches: list[ControllerPatch] = field(default_factory=list)
    generated: list[dict[str, Any]] = field(default_factory=list)
    """Documents contributed by resource generator plugins."""

    namespaces: list[NamespaceResource] = field(default_factory=list)

    def flux_system_kustomization(self) -> dict[str, Any] | None:
        """Return the flux-system kustomization.yaml applying the controller patches.

        This is the kustomize overlay of the Flux installation, so it lists the
        files `flux bootstrap` writes next to it.
        """
        if not self.patches:
            return None
        return {
            "apiVersion": KUSTOMIZE_CONFIG_API_VERSION,
            "kind": KUSTOMIZE_KIND,
            "resources": list(FLUX_SYSTEM_RESOURCES),
            "patches": [patch.manifest() for patch in self.patches],
        }

    def manifests(self) -> list[dict[str, Any]]:
        """Return every document.

        Namespaces come first, then the source repository, the Flux
        Kustomizations, generated documents and last the flux-system overlay.
        """
        docs = [namespace.manifest() for namespace in self.namespaces]
        if self.source_repository:
            docs.append(self.source_repository.manifest())
        docs.extend(resource.manifest() for resource in self.resources)
        docs.extend(self.generated)
        if (overlay := self.flux_system_kustomization()) is not None:
            docs.append(overlay)
        return docs

    def yaml(self) -> str:
        """Render the generated documents as a multi document YAML stream."""
        return yaml.dump_all(
            self.manifests(), sort_keys=False, explicit_start=True
        )


def _source_ref(cluster: Cluster, config: CompilerConfig) -> NamedResource:
    defaults = resolve_defaults(cluster)
    if cluster.oci:
        return NamedResource(
            kind=OCI_REPOSITORY,
            namespace=defaults.flux_namespace,
            name=defaults.oci_repository_name,
        )
    return NamedResource(
        kind=GIT_REPOSITORY,
        namespace=defaults.flux_namespace,
        name=config.git_repository_name,
    )


def _depends_on(
    unit: EnabledUnit, enabled: EnabledSet, flux_namespace: str
) -> list[NamedResource]:
    deps: list[NamedResource] = []
    for dep in unit.kustomization.depends_on:
        if isinstance(dep, RawDependency):
            deps.append(
                NamedResource(
                    kind=KUSTOMIZE_KIND, namespace=dep.namespace, name=dep.name
                )
            )
            continue
        try:
            target = parse_dependency(dep, unit.template.name)
        except InvalidReferenceError as err:
            raise CompileError(f"Kustomization '{unit.node_id}': {err}") from err
        if target is None or target not in enabled:
            raise CompileError(
                f"Kustomization '{unit.node_id}' depends on '{target}' which is "
                "not enabled; the input was not validated"
            )
        deps.append(
            NamedResource(
                kind=KUSTOMIZE_KIND,
                namespace=flux_namespace,
                name=flux_name(*split_id(target)),
            )
        )
    return deps


def resolve_preservation(
    cluster: Cluster, template: Template, unit: Kustomization
) -> PreservationPolicy:
    """Return the preservation policy of a unit on a cluster.

    A cluster override decides the mode. When it lists no `keep_resources`
    the template's list is used, so a cluster can switch a unit to `custom`
    without repeating the kinds.
    """
    base = unit.preservation or PreservationPolicy()
    override = None
    if template_config := cluster.get_template_config(template.name):
        if unit_override := template_config.kustomizations.get(unit.name):
            override = unit_override.preservation
    if override is None:
        return base
    keep = override.keep_resources
    if keep is None:
        keep = base.keep_resources
    return PreservationPolicy(mode=override.mode, keep_resources=keep)


def _compile_unit(
    cluster: Cluster,
    unit: EnabledUnit,
    enabled: EnabledSet,
    substitute: Mapping[str, str],
    defaults: ResolvedDefaults,
    source_ref: NamedResource,
    config: CompilerConfig,
) -> CompiledResource:
    ks = unit.kustomization
    flux_namespace = defaults.flux_namespace
    if (value := substitute.get(FLUX_NAMESPACE_KEY)) and value != flux_namespace:
        # The source and every other Kustomization live in the cluster's
        # namespace, so a unit level value only changes its substitution.
        _LOGGER.warning(
            "Kustomization '%s' sets %s=%s; it is placed in '%s' with the rest "
            "of the cluster",
            unit.node_id,
            FLUX_NAMESPACE_KEY,
            value,
            flux_namespace,
        )
    target_namespace = ks.target_namespace
    return CompiledResource(
        name=flux_name(unit.template.name, ks.name),
        namespace=flux_namespace,
        path=_flux_path(config, unit.template.name, ks.path),
        target_namespace=target_namespace,
        source_ref=source_ref,
        depends_on=_depends_on(unit, enabled, flux_namespace),
        substitute=dict(substitute),
        health_checks=[
            HealthCheckRef(
                api_version=check.api_version or DEFAULT_HEALTH_CHECK_API_VERSION,
                kind=check.kind,
                name=check.name,
                namespace=check.namespace or target_namespace,
            )
            for check in ks.health_checks
        ],
        custom_health_checks=[
            CustomHealthCheckRef(
                api_version=expr.api_version,
                kind=expr.kind,
                namespace=expr.namespace or target_namespace,
                current=expr.current,
                failed=expr.failed,
            )
            for expr in ks.health_check_exprs
        ],
        preserved_kinds=resolve_preservation(
            cluster, unit.template, ks
        ).preserved_kinds,
        prune=ks.prune,
        wait=ks.wait,
        interval=defaults.flux_reconciliation_interval,
        timeout=ks.timeout or defaults.flux_reconciliation_timeout,
        retry_interval=ks.retry_interval,
        node_id=unit.node_id,
    )


def compile_resources(
    cluster: Cluster,
    enabled: EnabledSet,
    substitutions: Mapping[NodeID, Mapping[str, str]],
    config: CompilerConfig | None = None,
) -> list[CompiledResource]:
    """Compile a Flux Kustomization for every enabled unit.

    The output follows template declaration order and then unit order within
    each template.

    Raises:
        CompileError: If a unit has no resolved substitutions or depends on a
            unit outside of the enabled set.
    """
    config = config or CompilerConfig()
    defaults = resolve_defaults(cluster)
    source_ref = _source_ref(cluster, config)
    resources = []
    for unit in enabled.units:
        if (substitute := substitutions.get(unit.node_id)) is None:
            raise CompileError(f"No substitutions resolved for '{unit.node_id}'")
        resources.append(
            _compile_unit(
                cluster, unit, enabled, substitute, defaults, source_ref, config
            )
        )
    _LOGGER.debug("Compiled %d resources for %s", len(resources), cluster.name)
    return resources


def is_system_namespace(name: str) -> bool:
    """Return True for namespaces Kubernetes or Flux already create."""
    return name in SYSTEM_NAMESPACES or name.startswith("kube-")


def compile_namespaces(
    cluster: Cluster,
    enabled: EnabledSet,
    config: CompilerConfig | None = None,
) -> list[NamespaceResource]:
    """Return a Namespace for every namespace an enabled unit names explicitly.

    Units without a namespace deploy to `default`, which already exists. The
    cluster's Flux namespace and system namespaces are skipped too. The
    result is sorted by name.
    """
    config = config or CompilerConfig()
    skip = {resolve_defaults(cluster).flux_namespace}
    names = {
        unit.kustomization.namespace.default
        for unit in enabled.units
        if unit.kustomization.namespace is not None
    }
    return [
        NamespaceResource(name=name, labels=dict(config.namespace_labels))
        for name in sorted(names)
        if name not in skip and not is_system_namespace(name)
    ]


def compile_source_repository(cluster: Cluster) -> SourceRepository | None:
    """Return the OCIRepository for the cluster, if it deploys from OCI."""
    if (oci := cluster.oci) is None:
        return None
    defaults = resolve_defaults(cluster)
    if oci.tag_strategy == "cluster":
        tag = cluster.name
    elif oci.tag_strategy == "manual":
        tag = oci.tag or "latest"
    else:
        # Updated by CI when an artifact is pushed
        tag = "latest"
    return SourceRepository(
        name=defaults.oci_repository_name,
        namespace=defaults.flux_namespace,
        url=f"oci://{oci.registry}/{oci.repository}",
        ref={"tag": tag},
        interval=defaults.flux_reconciliation_interval,
        provider=oci.provider,
        secret_ref=oci.secret_ref,
        insecure=oci.insecure,
    )


def compile_controller_patches(flux: FluxConfig | None) -> list[ControllerPatch]:
    """Return patches adding controller flags for the configured settings.

    Global settings apply to every controller and per controller settings
    override them. Controllers without any setting are not patched.
    """
    if flux is None:
        return []
    patches = []
    for controller in FLUX_CONTROLLERS:
        settings = flux.controllers.get(controller.replace("-", "_"))
        concurrent = (settings and settings.concurrent) or flux.concurrent
        requeue = (settings and settings.requeue_dependency) or flux.requeue_dependency
        operations = []
        if concurrent:
            operations.append(
                PatchOperation(
                    op="add",
                    path=CONTROLLER_ARGS_PATH,
                    value=f"--concurrent={concurrent}",
                )
            )
        if requeue:
            operations.append(
                PatchOperation(
                    op="add",
                    path=CONTROLLER_ARGS_PATH,
                    value=f"--requeue-dependency={requeue}",
                )
            )
        if operations:
            patches.append(
                ControllerPatch(
                    target=NamedResource(
                        kind="Deployment", namespace=None, name=controller
                    ),
                    operations=operations,
                )
            )
    return patches
