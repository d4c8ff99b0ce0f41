"""Data model for identities, bindings, assignments, pods and nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from typing import Iterable

CRD_GROUP = "aadpodidentity.k8s.io"
CRD_LABEL_KEY = "aadpodidbinding"
BEHAVIOR_KEY = "aadpodidentity.k8s.io/Behavior"
BEHAVIOR_NAMESPACED = "namespaced"
NODE_NAME_LABEL = "nodename"


class IdentityType(IntEnum):
    """Kind of identity an AzureIdentity refers to."""

    USER_ASSIGNED_MSI = 0
    SERVICE_PRINCIPAL = 1


class AssignedIDState(str, Enum):
    """Lifecycle state of an AzureAssignedIdentity.

    An empty status string means the assignment has not been created yet.
    """

    CREATED = "Created"
    ASSIGNED = "Assigned"
    UNASSIGNED = "Unassigned"


class EventType(Enum):
    """Kinds of change that trigger a sync cycle."""

    POD_CREATED = auto()
    POD_DELETED = auto()
    POD_UPDATED = auto()
    IDENTITY_CREATED = auto()
    IDENTITY_DELETED = auto()
    IDENTITY_UPDATED = auto()
    BINDING_CREATED = auto()
    BINDING_DELETED = auto()
    BINDING_UPDATED = auto()
    EXCEPTION_CREATED = auto()
    EXCEPTION_DELETED = auto()
    EXCEPTION_UPDATED = auto()


@dataclass
class ObjectMeta:
    """Name, namespace, version and labels of a cluster object."""

    name: str = ""
    namespace: str = ""
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


class _Named:
    meta: ObjectMeta

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def namespace(self) -> str:
        return self.meta.namespace

    @property
    def resource_version(self) -> str:
        return self.meta.resource_version

    @property
    def labels(self) -> dict[str, str]:
        return self.meta.labels


@dataclass
class AzureIdentity(_Named):
    """An identity that pods may be given."""

    meta: ObjectMeta = field(default_factory=ObjectMeta)
    type: IdentityType = IdentityType.USER_ASSIGNED_MSI
    resource_id: str = ""
    client_id: str = ""
    tenant_id: str = ""
    ad_resource_id: str = ""
    ad_endpoint: str = ""

    @property
    def is_user_assigned_msi(self) -> bool:
        return self.type == IdentityType.USER_ASSIGNED_MSI


@dataclass
class AzureIdentityBinding(_Named):
    """Binds pods carrying a selector label to an identity by name."""

    meta: ObjectMeta = field(default_factory=ObjectMeta)
    azure_identity: str = ""
    selector: str = ""


@dataclass
class AzureAssignedIdentity(_Named):
    """The assignment of one identity to one pod on one node."""

    meta: ObjectMeta = field(default_factory=ObjectMeta)
    identity: AzureIdentity = field(default_factory=AzureIdentity)
    binding: AzureIdentityBinding = field(default_factory=AzureIdentityBinding)
    pod: str = ""
    pod_namespace: str = ""
    node_name: str = ""
    status: str = ""
    available_replicas: int = 0


@dataclass
class Pod:
    """The parts of a pod that identity assignment looks at."""

    name: str
    namespace: str = ""
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def binding_selector(self) -> str:
        return self.labels.get(CRD_LABEL_KEY, "")


@dataclass
class Node:
    """A cluster node and its cloud provider ID."""

    name: str
    provider_id: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeChanges:
    """Pending identity changes for a single node or scale set."""

    add_msi_ids: list[str] = field(default_factory=list)
    remove_msi_ids: list[str] = field(default_factory=list)
    to_create: list[AzureAssignedIdentity] = field(default_factory=list)
    to_delete: list[AzureAssignedIdentity] = field(default_factory=list)
    to_update: list[AzureAssignedIdentity] = field(default_factory=list)
    is_vmss: bool = False

    def merge(self, other: NodeChanges) -> NodeChanges:
        """Append every pending change of ``other`` to this one."""
        self.add_msi_ids.extend(other.add_msi_ids)
        self.remove_msi_ids.extend(other.remove_msi_ids)
        self.to_create.extend(other.to_create)
        self.to_delete.extend(other.to_delete)
        self.to_update.extend(other.to_update)
        return self


def is_namespaced_identity(identity: AzureIdentity) -> bool:
    """Whether the identity asks to be matched only within its namespace."""
    return identity.meta.annotations.get(BEHAVIOR_KEY) == BEHAVIOR_NAMESPACED


def get_id_key(namespace: str, name: str) -> str:
    """Key used to look up an object by namespace and name."""
    return "/".join((namespace, name))


def sort_bindings(bindings: Iterable[AzureIdentityBinding]) -> list[AzureIdentityBinding]:
    """Return the bindings in a deterministic order, by name."""
    return sorted(bindings, key=lambda binding: binding.name)