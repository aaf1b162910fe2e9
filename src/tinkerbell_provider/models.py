"""Pydantic models for the resources the provider reads and writes.

These models provide:
1. Type-safe parsing of YAML manifests (camelCase aliases, as stored)
2. Validation at the boundary (fail fast, fail loudly)
3. A common ObjectMeta so the store can key, version and label any resource
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field

# =============================================================================
# Well-known names
# =============================================================================

HARDWARE_OWNER_NAME_LABEL = "v1alpha1.tinkerbell.org/ownerName"
HARDWARE_OWNER_NAMESPACE_LABEL = "v1alpha1.tinkerbell.org/ownerNamespace"

# Finalizer set on both the machine and its claimed hardware.
MACHINE_FINALIZER = "tinkerbellmachine.infrastructure.cluster.x-k8s.io"

INFRASTRUCTURE_API_VERSION = "infrastructure.cluster.x-k8s.io/v1beta1"
TINKERBELL_API_VERSION = "tinkerbell.org/v1alpha1"

NODE_INTERNAL_IP = "InternalIP"

DEFAULT_NAMESPACE = "default"


class _Model(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Metadata
# =============================================================================


class OwnerReference(_Model):
    """Reference to the object that owns (and cascades deletion to) another."""

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    uid: str


class ObjectMeta(_Model):
    """Identity, labels and lifecycle bookkeeping shared by every resource."""

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = DEFAULT_NAMESPACE
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(
        default_factory=list, alias="ownerReferences"
    )
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")


class Resource(_Model):
    """Base for all stored resources."""

    KIND: ClassVar[str] = ""
    API_VERSION: ClassVar[str] = ""

    api_version: str = Field("", alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta

    def model_post_init(self, __context: Any) -> None:
        if not self.api_version:
            self.api_version = self.API_VERSION
        if not self.kind:
            self.kind = self.KIND

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> tuple[str, str]:
        """(namespace, name) identity, also the allocation tie-break order."""
        return (self.metadata.namespace, self.metadata.name)

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer; returns True if it was not already present."""
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.metadata.finalizers:
            return False
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]
        return True

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.metadata.name,
            uid=self.metadata.uid,
        )


# =============================================================================
# Label selectors
# =============================================================================


class LabelSelectorRequirement(_Model):
    """A single set-based requirement: key, operator and optional values."""

    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(_Model):
    """matchLabels and matchExpressions, AND-combined."""

    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: list[LabelSelectorRequirement] = Field(
        default_factory=list, alias="matchExpressions"
    )


class HardwareAffinityTerm(_Model):
    label_selector: LabelSelector = Field(default_factory=LabelSelector, alias="labelSelector")


class WeightedHardwareAffinityTerm(_Model):
    """A preferred term; candidates matching it score ``weight``."""

    weight: Annotated[int, Field(ge=1, le=100)]
    hardware_affinity_term: HardwareAffinityTerm = Field(
        default_factory=HardwareAffinityTerm, alias="hardwareAffinityTerm"
    )


class HardwareAffinity(_Model):
    """Required terms are OR-combined filters, preferred terms rank candidates."""

    required: list[HardwareAffinityTerm] = Field(default_factory=list)
    preferred: list[WeightedHardwareAffinityTerm] = Field(default_factory=list)


# =============================================================================
# Hardware
# =============================================================================


class Disk(_Model):
    device: Annotated[str, Field(min_length=1)]


class IP(_Model):
    address: str = ""
    netmask: str = ""
    gateway: str = ""


class DHCP(_Model):
    mac: str = ""
    hostname: str = ""
    ip: IP | None = None


class Interface(_Model):
    dhcp: DHCP | None = None


class Instance(_Model):
    id: str = ""


class HardwareMetadata(_Model):
    instance: Instance = Field(default_factory=Instance)


class HardwareSpec(_Model):
    disks: list[Disk] = Field(default_factory=list)
    interfaces: list[Interface] = Field(default_factory=list)
    metadata: HardwareMetadata = Field(default_factory=HardwareMetadata)
    user_data: str | None = Field(None, alias="userData")


class Hardware(Resource):
    """A pre-registered physical machine that can be claimed and provisioned."""

    KIND: ClassVar[str] = "Hardware"
    API_VERSION: ClassVar[str] = TINKERBELL_API_VERSION

    spec: HardwareSpec = Field(default_factory=HardwareSpec)

    @property
    def owner(self) -> tuple[str, str] | None:
        """(namespace, name) of the owning machine, or None if unclaimed."""
        labels = self.metadata.labels
        if HARDWARE_OWNER_NAME_LABEL not in labels:
            return None
        return (labels.get(HARDWARE_OWNER_NAMESPACE_LABEL, ""), labels[HARDWARE_OWNER_NAME_LABEL])


# =============================================================================
# Machine
# =============================================================================


class MachineAddress(_Model):
    type: str = NODE_INTERNAL_IP
    address: str


class TinkerbellMachineSpec(_Model):
    """Desired state of a machine request."""

    hardware_name: str = Field("", alias="hardwareName")
    provider_id: str = Field("", alias="providerID")
    hardware_affinity: HardwareAffinity | None = Field(None, alias="hardwareAffinity")
    template_override: str = Field("", alias="templateOverride")

    # Image lookup overrides; empty means "use the cluster-level default"
    image_lookup_format: str = Field("", alias="imageLookupFormat")
    image_lookup_base_registry: str = Field("", alias="imageLookupBaseRegistry")
    image_lookup_os_distro: str = Field("", alias="imageLookupOSDistro")
    image_lookup_os_version: str = Field("", alias="imageLookupOSVersion")

    # Kubernetes version the machine should run; feeds the image URL
    version: str = ""

    # Rendered bootstrap configuration; None until the bootstrap provider supplies it
    bootstrap_data: str | None = Field(None, alias="bootstrapData")


class TinkerbellMachineStatus(_Model):
    ready: bool = False
    addresses: list[MachineAddress] = Field(default_factory=list)


class TinkerbellMachine(Resource):
    """A logical request for one hardware unit to be provisioned."""

    KIND: ClassVar[str] = "TinkerbellMachine"
    API_VERSION: ClassVar[str] = INFRASTRUCTURE_API_VERSION

    spec: TinkerbellMachineSpec = Field(default_factory=TinkerbellMachineSpec)
    status: TinkerbellMachineStatus = Field(default_factory=TinkerbellMachineStatus)


# =============================================================================
# Template and workflow
# =============================================================================


class TemplateSpec(_Model):
    data: str | None = None


class Template(Resource):
    """Rendered provisioning instructions for one machine."""

    KIND: ClassVar[str] = "Template"
    API_VERSION: ClassVar[str] = TINKERBELL_API_VERSION

    spec: TemplateSpec = Field(default_factory=TemplateSpec)


class WorkflowSpec(_Model):
    template_ref: str = Field("", alias="templateRef")
    hardware_map: dict[str, str] = Field(default_factory=dict, alias="hardwareMap")


class Workflow(Resource):
    """Binds a template to the hardware it runs on."""

    KIND: ClassVar[str] = "Workflow"
    API_VERSION: ClassVar[str] = TINKERBELL_API_VERSION

    spec: WorkflowSpec = Field(default_factory=WorkflowSpec)


RESOURCE_KINDS: dict[str, type[Resource]] = {
    cls.KIND: cls for cls in (Hardware, TinkerbellMachine, Template, Workflow)
}


def get_resource_class(kind: str) -> type[Resource]:
    """Look up the model class for a manifest ``kind``.

    Raises:
        ValueError: If the kind is not one the provider handles.
    """
    resource_class = RESOURCE_KINDS.get(kind)
    if resource_class is None:
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {sorted(RESOURCE_KINDS)}")
    return resource_class
