"""Representation of the documents that describe a cluster.

A repository is made of a few kinds of documents: a `Cluster` that opts into
a set of templates, the `Template` definitions themselves (each a list of
deployable Kustomization units), `NodeProfile` documents that contribute
substitution values to the units scheduled on those nodes and a `Project`
listing the sources templates are fetched from.

Objects are built from already decoded YAML documents with `parse_doc` and are
treated as immutable for the duration of a compilation run.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "Cluster",
    "ClusterDefaults",
    "TemplateConfig",
    "KustomizationOverride",
    "OciConfig",
    "FluxConfig",
    "FluxControllerSettings",
    "Template",
    "Kustomization",
    "NamespaceConfig",
    "Substitution",
    "HealthCheck",
    "HealthCheckExpr",
    "PreservationPolicy",
    "NodeLabelRequirement",
    "RawDependency",
    "NodeProfile",
    "NamedResource",
    "Project",
    "TemplateSource",
    "SourceType",
    "GitSource",
    "HttpSource",
    "OciSource",
    "parse_doc",
]

API_GROUP = "flux-template.io"
CLUSTER_KIND = "Cluster"
TEMPLATE_KIND = "Template"
NODE_PROFILE_KIND = "NodeProfile"
PROJECT_KIND = "Project"
KUSTOMIZE_KIND = "Kustomization"
GIT_REPOSITORY = "GitRepository"
OCI_REPOSITORY = "OCIRepository"
DEFAULT_NAMESPACE = "default"

# Unit names are joined with their template name using this separator to form
# a NodeID, so it may never appear in a unit name.
ID_SEPARATOR = "/"

TAG_STRATEGIES = ("cluster", "git-sha", "version", "manual")
PRESERVATION_MODES = ("none", "stateful", "custom")
STATEFUL_RESOURCES = ("PersistentVolumeClaim", "Secret", "ConfigMap")
NODE_LABEL_REQUIREMENT = "nodeLabel"
OCI_PROVIDERS = ("aws", "azure", "gcp", "generic")


def stringify_value(value: Any) -> str:
    """Render a YAML scalar as the string handed to a Flux substitution."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _string_map(values: dict[str, Any] | None) -> dict[str, str]:
    """Return a copy of the mapping with every value rendered as a string."""
    return {str(key): stringify_value(value) for key, value in (values or {}).items()}


def _check_kind(doc: dict[str, Any], kind: str) -> None:
    """Assert the document is of the expected kind in our API group."""
    if doc.get("kind") != kind:
        raise InputException(f"Invalid object expected kind '{kind}': {doc}")
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(API_GROUP):
        raise InputException(f"Invalid object expected '{API_GROUP}': {doc}")


def _metadata_name(cls: type, doc: dict[str, Any]) -> str:
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
    return str(name)


@dataclass(frozen=True)
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass(frozen=True)
class RawDependency(BaseManifest):
    """A dependency on a Flux Kustomization not managed by any template.

    These are passed through to the generated resource untouched and are
    not part of dependency graph validation.
    """

    name: str
    namespace: str

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "RawDependency":
        if not (raw := doc.get("raw")):
            raise InputException(f"Invalid dependency missing raw: {doc}")
        if not (name := raw.get("name")) or not (namespace := raw.get("namespace")):
            raise InputException(f"Invalid raw dependency missing fields: {doc}")
        return cls(name=name, namespace=namespace)


@dataclass(frozen=True)
class NamespaceConfig(BaseManifest):
    """Namespace settings for a unit."""

    default: str = DEFAULT_NAMESPACE
    """The namespace resources of the unit are deployed to."""


@dataclass(frozen=True)
class Substitution(BaseManifest):
    """A substitution variable declared by a unit."""

    name: str
    """The variable name, referenced as ${name} in the unit manifests."""

    default: str | None = None
    """Value used when no scope provides one."""

    @property
    def required(self) -> bool:
        return self.default is None


@dataclass(frozen=True)
class HealthCheck(BaseManifest):
    """A resource Flux waits on before reporting the unit ready."""

    kind: str
    name: str
    api_version: str | None = None
    namespace: str | None = None


@dataclass(frozen=True)
class HealthCheckExpr(BaseManifest):
    """A health check of a resource kind evaluated with CEL expressions."""

    api_version: str
    kind: str
    namespace: str | None = None
    current: str | None = None
    """Expression that is true once the resource is healthy."""

    failed: str | None = None
    """Expression that is true when the resource has failed."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HealthCheckExpr":
        if not (api_version := doc.get("api_version")) or not (kind := doc.get("kind")):
            raise InputException(f"Invalid health check expression: {doc}")
        return cls(
            api_version=api_version,
            kind=kind,
            namespace=doc.get("namespace"),
            current=doc.get("current"),
            failed=doc.get("failed"),
        )


@dataclass(frozen=True)
class PreservationPolicy(BaseManifest):
    """Which resources of a unit are kept when the unit is removed.

    `stateful` keeps persistent volume claims, secrets and config maps,
    `custom` keeps only the kinds in `keep_resources` and `none` keeps nothing.
    """

    mode: str = "stateful"
    keep_resources: list[str] | None = None

    @property
    def preserved_kinds(self) -> list[str]:
        if self.mode == "none":
            return []
        if self.mode == "custom":
            return list(self.keep_resources or ())
        return list(STATEFUL_RESOURCES)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "PreservationPolicy":
        mode = doc.get("mode", "stateful")
        if mode not in PRESERVATION_MODES:
            raise InputException(f"Invalid preservation mode '{mode}'")
        keep = doc.get("keep_resources")
        return cls(
            mode=mode,
            keep_resources=[str(kind) for kind in keep] if keep is not None else None,
        )


@dataclass(frozen=True)
class NodeLabelRequirement(BaseManifest):
    """A template needs at least `at_least` cluster nodes carrying a label."""

    key: str
    value: str | None = None
    """Required label value, or None when the label only has to be present."""

    at_least: int = 1

    def matches(self, labels: dict[str, str]) -> bool:
        if self.key not in labels:
            return False
        return self.value is None or labels[self.key] == self.value

    def __str__(self) -> str:
        if self.value is None:
            return self.key
        return f"{self.key}={self.value}"

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "NodeLabelRequirement":
        if doc.get("type") != NODE_LABEL_REQUIREMENT:
            raise InputException(f"Unsupported template requirement: {doc}")
        if not (key := doc.get("key")):
            raise InputException(f"Invalid node label requirement missing key: {doc}")
        at_least = doc.get("at_least", 1)
        if not isinstance(at_least, int) or at_least < 1:
            raise InputException(f"Invalid node label requirement at_least: {doc}")
        value = doc.get("value")
        return cls(
            key=str(key),
            value=stringify_value(value) if value is not None else None,
            at_least=at_least,
        )


@dataclass(frozen=True)
class Kustomization(BaseManifest):
    """A single deployable unit of a template.

    This becomes one flux Kustomization pointing at `path` within the
    template sources.
    """

    kind: ClassVar[str] = KUSTOMIZE_KIND

    name: str
    """The name of the unit, unique within its template."""

    path: str
    """Path of the kustomize directory relative to the template root."""

    namespace: NamespaceConfig | None = None
    """Optional namespace override for the unit."""

    depends_on: list[str | RawDependency] = field(default_factory=list)
    """Dependencies as `unit`, `template/unit` or raw references."""

    substitutions: list[Substitution] = field(default_factory=list)
    """Declared substitution variables and their defaults."""

    health_checks: list[HealthCheck] = field(default_factory=list)
    """Resources to health check after apply."""

    health_check_exprs: list[HealthCheckExpr] = field(default_factory=list)
    """Health checks of resource kinds evaluated with CEL expressions."""

    prune: bool = True
    wait: bool = True
    timeout: str | None = None
    retry_interval: str | None = None

    node_profiles: list[str] | None = None
    """Node profiles whose values apply to this unit, or None for all."""

    preservation: PreservationPolicy | None = None
    """Resources kept when the unit is removed, `stateful` when unset."""

    def __post_init__(self) -> None:
        if ID_SEPARATOR in self.name:
            raise InputException(
                f"Kustomization name '{self.name}' may not contain '{ID_SEPARATOR}'"
            )

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Kustomization":
        """Parse a unit from the kustomizations list of a template."""
        if not (name := doc.get("name")):
            raise InputException(f"Invalid {cls.__name__} missing name: {doc}")
        if not (path := doc.get("path")):
            raise InputException(f"Invalid {cls.__name__} missing path: {doc}")
        namespace: NamespaceConfig | None = None
        if (ns := doc.get("namespace")) is not None:
            namespace = NamespaceConfig(default=ns.get("default", DEFAULT_NAMESPACE))
        depends_on: list[str | RawDependency] = []
        for dep in doc.get("depends_on") or ():
            if isinstance(dep, str):
                depends_on.append(dep)
            elif isinstance(dep, dict):
                depends_on.append(RawDependency.parse_doc(dep))
            else:
                raise InputException(f"Invalid dependency in {name}: {dep!r}")
        substitutions = []
        for sub in doc.get("substitutions") or ():
            if not (sub_name := sub.get("name")):
                raise InputException(f"Invalid substitution missing name: {doc}")
            default = sub.get("default")
            substitutions.append(
                Substitution(
                    name=sub_name,
                    default=stringify_value(default) if default is not None else None,
                )
            )
        health_checks = []
        for check in doc.get("health_checks") or ():
            if not (kind := check.get("kind")) or not (check_name := check.get("name")):
                raise InputException(f"Invalid health check missing fields: {doc}")
            health_checks.append(
                HealthCheck(
                    kind=kind,
                    name=check_name,
                    api_version=check.get("api_version"),
                    namespace=check.get("namespace"),
                )
            )
        return cls(
            name=name,
            path=path,
            namespace=namespace,
            depends_on=depends_on,
            substitutions=substitutions,
            health_checks=health_checks,
            health_check_exprs=[
                HealthCheckExpr.parse_doc(expr)
                for expr in doc.get("health_check_exprs") or ()
            ],
            prune=doc.get("prune", True),
            wait=doc.get("wait", True),
            timeout=doc.get("timeout"),
            retry_interval=doc.get("retry_interval"),
            node_profiles=doc.get("node_profiles"),
            preservation=(
                PreservationPolicy.parse_doc(preservation)
                if (preservation := doc.get("preservation"))
                else None
            ),
        )

    @property
    def target_namespace(self) -> str:
        """The namespace the unit's resources are deployed to."""
        if self.namespace:
            return self.namespace.default
        return DEFAULT_NAMESPACE


@dataclass(frozen=True)
class Template(BaseManifest):
    """A reusable, named collection of deployable units."""

    kind: ClassVar[str] = TEMPLATE_KIND

    name: str
    kustomizations: list[Kustomization] = field(default_factory=list)
    requirements: list[NodeLabelRequirement] = field(default_factory=list)
    """Labels the cluster nodes must carry for the template to be deployed."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Template":
        """Parse a Template document."""
        _check_kind(doc, TEMPLATE_KIND)
        name = _metadata_name(cls, doc)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        if not (units := spec.get("kustomizations")):
            raise InputException(
                f"Invalid {cls.__name__} missing spec.kustomizations: {doc}"
            )
        kustomizations = [Kustomization.parse_doc(unit) for unit in units]
        seen: set[str] = set()
        for ks in kustomizations:
            if ks.name in seen:
                raise InputException(
                    f"Template '{name}' declares kustomization '{ks.name}' twice"
                )
            seen.add(ks.name)
        return cls(
            name=name,
            kustomizations=kustomizations,
            requirements=[
                NodeLabelRequirement.parse_doc(requirement)
                for requirement in spec.get("requirements") or ()
            ],
        )

    def get_kustomization(self, name: str) -> Kustomization | None:
        for ks in self.kustomizations:
            if ks.name == name:
                return ks
        return None


@dataclass(frozen=True)
class KustomizationOverride(BaseManifest):
    """Per-unit overrides a cluster applies to an enabled template."""

    values: dict[str, str] = field(default_factory=dict)
    preservation: PreservationPolicy | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any] | None) -> "KustomizationOverride":
        doc = doc or {}
        return cls(
            values=_string_map(doc.get("values")),
            preservation=(
                PreservationPolicy.parse_doc(preservation)
                if (preservation := doc.get("preservation"))
                else None
            ),
        )


@dataclass(frozen=True)
class TemplateConfig(BaseManifest):
    """A template a cluster opts into, with its overrides."""

    name: str
    values: dict[str, str] = field(default_factory=dict)
    kustomizations: dict[str, KustomizationOverride] = field(default_factory=dict)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "TemplateConfig":
        if not (name := doc.get("name")):
            raise InputException(f"Invalid template reference missing name: {doc}")
        overrides = {
            str(ks_name): KustomizationOverride.parse_doc(override)
            for ks_name, override in (doc.get("kustomizations") or {}).items()
        }
        return cls(
            name=name,
            values=_string_map(doc.get("values")),
            kustomizations=overrides,
        )


@dataclass(frozen=True)
class ClusterDefaults(BaseManifest):
    """Cluster level defaults; unset fields fall back to fixed constants."""

    flux_namespace: str | None = None
    oci_repository_name: str | None = None
    oci_registry_secret_name: str | None = None
    flux_reconciliation_interval: str | None = None
    flux_reconciliation_timeout: str | None = None


@dataclass(frozen=True)
class OciConfig(BaseManifest):
    """The OCI registry Flux watches for the cluster's artifacts."""

    registry: str
    repository: str
    tag_strategy: str = "git-sha"
    tag: str | None = None
    secret_ref: str | None = None
    provider: str = "generic"
    insecure: bool = False

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "OciConfig":
        if not (registry := doc.get("registry")):
            raise InputException(f"Invalid oci config missing registry: {doc}")
        if not (repository := doc.get("repository")):
            raise InputException(f"Invalid oci config missing repository: {doc}")
        tag_strategy = doc.get("tag_strategy", "git-sha")
        if tag_strategy not in TAG_STRATEGIES:
            raise InputException(f"Invalid oci tag_strategy '{tag_strategy}'")
        provider = doc.get("provider", "generic")
        if provider not in OCI_PROVIDERS:
            raise InputException(f"Invalid oci provider '{provider}'")
        return cls(
            registry=registry,
            repository=repository,
            tag_strategy=tag_strategy,
            tag=doc.get("tag"),
            secret_ref=doc.get("secret_ref"),
            provider=provider,
            insecure=bool(doc.get("insecure", False)),
        )


@dataclass(frozen=True)
class FluxControllerSettings(BaseManifest):
    """Tuning flags for a single Flux controller."""

    concurrent: int | None = None
    requeue_dependency: str | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any] | None) -> "FluxControllerSettings":
        doc = doc or {}
        return cls(
            concurrent=doc.get("concurrent"),
            requeue_dependency=doc.get("requeue_dependency"),
        )


@dataclass(frozen=True)
class FluxConfig(BaseManifest):
    """Flux controller settings, global and per controller."""

    concurrent: int | None = None
    requeue_dependency: str | None = None
    controllers: dict[str, FluxControllerSettings] = field(default_factory=dict)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "FluxConfig":
        controllers_doc = dict(doc.get("controllers") or {})
        concurrent = controllers_doc.pop("concurrent", None)
        requeue_dependency = controllers_doc.pop("requeue_dependency", None)
        return cls(
            concurrent=concurrent,
            requeue_dependency=requeue_dependency,
            controllers={
                key: FluxControllerSettings.parse_doc(value)
                for key, value in controllers_doc.items()
            },
        )


@dataclass(frozen=True)
class Cluster(BaseManifest):
    """A deployment target and the templates it opts into."""

    kind: ClassVar[str] = CLUSTER_KIND

    name: str
    defaults: ClusterDefaults = field(default_factory=ClusterDefaults)
    values: dict[str, str] = field(default_factory=dict)
    """Cluster level default substitution values."""

    templates: list[TemplateConfig] = field(default_factory=list)
    """Templates enabled for this cluster, in declaration order."""

    nodes: list[str] = field(default_factory=list)
    """Names of the node profiles used by the cluster's nodes."""

    oci: OciConfig | None = None
    flux: FluxConfig | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Cluster":
        """Parse a Cluster document."""
        _check_kind(doc, CLUSTER_KIND)
        name = _metadata_name(cls, doc)
        spec = doc.get("spec") or {}
        defaults_doc = spec.get("defaults") or {}
        unknown = set(defaults_doc) - set(ClusterDefaults.__dataclass_fields__)
        if unknown:
            raise InputException(f"Cluster '{name}' has unknown defaults: {unknown}")
        return cls(
            name=name,
            defaults=ClusterDefaults(**defaults_doc),
            values=_string_map(spec.get("values")),
            templates=[
                TemplateConfig.parse_doc(t) for t in spec.get("templates") or ()
            ],
            nodes=[str(node) for node in spec.get("nodes") or ()],
            oci=OciConfig.parse_doc(oci) if (oci := spec.get("oci")) else None,
            flux=FluxConfig.parse_doc(flux) if (flux := spec.get("flux")) else None,
        )

    def get_template_config(self, template_name: str) -> TemplateConfig | None:
        """Return the cluster's entry for the template, if it is listed."""
        for template_config in self.templates:
            if template_config.name == template_name:
                return template_config
        return None


@dataclass(frozen=True)
class NodeProfile(BaseManifest):
    """Shared settings for a class of cluster nodes."""

    kind: ClassVar[str] = NODE_PROFILE_KIND

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)
    """Substitution values contributed to units running on these nodes."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "NodeProfile":
        """Parse a NodeProfile document."""
        _check_kind(doc, NODE_PROFILE_KIND)
        name = _metadata_name(cls, doc)
        spec = doc.get("spec") or {}
        return cls(
            name=name,
            labels=_string_map(spec.get("labels")),
            values=_string_map(spec.get("values")),
        )


class SourceType(StrEnum):
    """The kind of location a template source is fetched from."""

    GIT = "git"
    HTTP = "http"
    OCI = "oci"


@dataclass(frozen=True)
class GitSource(BaseManifest):
    """A template source stored in a git repository.

    Exactly one of branch, tag or commit selects the revision.
    """

    url: str
    branch: str | None = None
    tag: str | None = None
    commit: str | None = None
    path: str | None = None
    """Subdirectory of the repository holding the templates."""

    @property
    def ref(self) -> str:
        """Return the selected revision."""
        return self.commit or self.tag or self.branch or ""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "GitSource":
        if not (url := doc.get("url")):
            raise InputException(f"Invalid git source missing url: {doc}")
        ref = doc.get("ref") or {}
        selected = [key for key in ("branch", "tag", "commit") if ref.get(key)]
        if len(selected) != 1:
            raise InputException(
                f"Invalid git source '{url}' expected exactly one of "
                f"branch, tag or commit: {doc}"
            )
        return cls(
            url=url,
            branch=ref.get("branch"),
            tag=ref.get("tag"),
            commit=ref.get("commit"),
            path=doc.get("path"),
        )


@dataclass(frozen=True)
class HttpSource(BaseManifest):
    """A template source downloaded as an archive over http."""

    url: str
    checksum: str | None = None
    """Expected sha256 of the archive, optionally prefixed with `sha256:`."""

    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HttpSource":
        if not (url := doc.get("url")):
            raise InputException(f"Invalid http source missing url: {doc}")
        return cls(
            url=url,
            checksum=doc.get("checksum"),
            headers=_string_map(doc.get("headers")),
        )


@dataclass(frozen=True)
class OciSource(BaseManifest):
    """A template source pulled from an OCI registry."""

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def url(self) -> str:
        return f"{self.registry}/{self.repository}"

    def versioned_url(self) -> str:
        """Return the pull reference, preferring the digest over the tag."""
        if self.digest:
            return f"{self.url}@{self.digest}"
        return f"{self.url}:{self.tag or 'latest'}"

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "OciSource":
        if not (registry := doc.get("registry")):
            raise InputException(f"Invalid oci source missing registry: {doc}")
        if not (repository := doc.get("repository")):
            raise InputException(f"Invalid oci source missing repository: {doc}")
        return cls(
            registry=registry,
            repository=repository,
            tag=doc.get("tag"),
            digest=doc.get("digest"),
        )


@dataclass(frozen=True)
class TemplateSource(BaseManifest):
    """A named location templates are fetched from.

    A source is mutable when the content behind its version may change over
    time (a git branch, an http archive without a checksum, the `latest` tag
    of an image). Only mutable sources expire from the cache.
    """

    name: str
    git: GitSource | None = None
    http: HttpSource | None = None
    oci: OciSource | None = None
    ttl: str | None = None
    """How long a fetched copy of a mutable source stays fresh, e.g. `1h`."""

    def __post_init__(self) -> None:
        if sum(1 for s in (self.git, self.http, self.oci) if s is not None) != 1:
            raise InputException(
                f"Template source '{self.name}' must set exactly one of "
                "git, http or oci"
            )

    @property
    def source_type(self) -> SourceType:
        if self.git:
            return SourceType.GIT
        if self.http:
            return SourceType.HTTP
        return SourceType.OCI

    @property
    def version(self) -> str:
        """Return the version used to key cached copies of this source."""
        if self.git:
            return self.git.ref
        if self.http:
            return self.http.checksum or "latest"
        assert self.oci
        return self.oci.digest or self.oci.tag or "latest"

    @property
    def mutable(self) -> bool:
        if self.git:
            return self.git.branch is not None
        if self.http:
            return not self.http.checksum
        assert self.oci
        return not self.oci.digest and (self.oci.tag or "latest") == "latest"

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "TemplateSource":
        """Parse a template source entry."""
        if not (name := doc.get("name")):
            raise InputException(f"Invalid template source missing name: {doc}")
        return cls(
            name=name,
            git=GitSource.parse_doc(doc["git"]) if doc.get("git") else None,
            http=HttpSource.parse_doc(doc["http"]) if doc.get("http") else None,
            oci=OciSource.parse_doc(doc["oci"]) if doc.get("oci") else None,
            ttl=doc.get("ttl"),
        )


@dataclass(frozen=True)
class Project(BaseManifest):
    """The list of template sources shared by every cluster of a repo."""

    kind: ClassVar[str] = PROJECT_KIND

    name: str
    sources: list[TemplateSource] = field(default_factory=list)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Project":
        """Parse a Project document."""
        _check_kind(doc, PROJECT_KIND)
        name = _metadata_name(cls, doc)
        spec = doc.get("spec") or {}
        sources = [TemplateSource.parse_doc(src) for src in spec.get("sources") or []]
        names = [source.name for source in sources]
        if len(names) != len(set(names)):
            raise InputException(f"Project '{name}' has duplicate source names")
        return cls(name=name, sources=sources)


def parse_doc(doc: dict[str, Any]) -> Cluster | Template | NodeProfile | Project:
    """Parse any supported document based on its kind."""
    if not (kind := doc.get("kind")):
        raise InputException(f"Invalid object missing kind: {doc}")
    if kind == CLUSTER_KIND:
        return Cluster.parse_doc(doc)
    if kind == TEMPLATE_KIND:
        return Template.parse_doc(doc)
    if kind == NODE_PROFILE_KIND:
        return NodeProfile.parse_doc(doc)
    if kind == PROJECT_KIND:
        return Project.parse_doc(doc)
    raise InputException(f"Unsupported object kind '{kind}'")
