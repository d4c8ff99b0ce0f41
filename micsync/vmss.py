"""Node lookup and grouping of nodes by virtual machine scale set."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from micsync.models import Node

VMSS_RESOURCE_TYPE = "virtualMachineScaleSets"

_RESOURCE_ID_PATTERN = re.compile(
    r"subscriptions/([^/]+)/resourceGroups/([^/]+)/providers/([^/]+)/([^/]+)/([^/]+)",
    re.IGNORECASE,
)


class NodeNotFoundError(LookupError):
    """Raised when a node is not known to the cluster."""

    def __init__(self, name: str) -> None:
        super().__init__(f"node {name!r} not found")
        self.name = name


class InvalidResourceIDError(ValueError):
    """Raised when a resource ID does not have the expected form."""


@dataclass(frozen=True)
class ResourceID:
    """The parts of a parsed cloud resource ID."""

    subscription_id: str
    resource_group: str
    provider: str
    resource_type: str
    resource_name: str


class NodeGetter(Protocol):
    """Anything that can look up a node by name."""

    def get(self, name: str) -> Node:
        """Return the named node or raise NodeNotFoundError."""
        ...


class NodeCache:
    """A thread-safe in-memory store of nodes, looked up by name."""

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[str, Node] = {node.name: node for node in nodes}

    def get(self, name: str) -> Node:
        with self._lock:
            try:
                return self._nodes[name]
            except KeyError:
                raise NodeNotFoundError(name) from None

    def add(self, node: Node) -> None:
        with self._lock:
            self._nodes[node.name] = node

    def remove(self, name: str) -> None:
        with self._lock:
            self._nodes.pop(name, None)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)


@dataclass
class VMSSGroup:
    """The nodes known to belong to one scale set."""

    nodes: set[str] = field(default_factory=set)

    def has_node(self, ref: str) -> bool:
        return ref in self.nodes


@dataclass
class VMSSGroupList:
    """Scale set groups, indexed both by scale set ID and by node name."""

    groups: dict[str, VMSSGroup] = field(default_factory=dict)
    node_index: dict[str, VMSSGroup] = field(default_factory=dict)

    def add_node(self, vmss: str, node: str) -> None:
        group = self.groups.setdefault(vmss, VMSSGroup())
        group.nodes.add(node)
        self.node_index[node] = group

    def get_by_node(self, ref: str) -> Optional[VMSSGroup]:
        return self.node_index.get(ref)

    def get(self, vmss_id: str) -> Optional[VMSSGroup]:
        return self.groups.get(vmss_id)


def parse_resource_id(resource_id: str) -> ResourceID:
    """Split a resource or provider ID into its parts."""
    match = _RESOURCE_ID_PATTERN.search(resource_id)
    if match is None:
        raise InvalidResourceIDError(
            f"parsing failed for {resource_id}. Invalid resource Id format"
        )
    subscription, group, provider, resource_type, name = match.groups()
    return ResourceID(subscription, group, provider, resource_type, name)


def make_vmss_id(resource: ResourceID) -> str:
    """Identify a scale set by subscription, resource group and name."""
    parts = (resource.subscription_id, resource.resource_group, resource.resource_name)
    return "/".join(part.strip("/") for part in parts if part.strip("/"))


def get_vmss_name(vmss_id: str) -> str:
    """The scale set name, the last element of a scale set ID."""
    return vmss_id.rpartition("/")[2]


def is_vmss(node: Node) -> Optional[str]:
    """Return the scale set ID of the node, or None if it is not in one.

    A node with no provider ID is not in a scale set; a provider ID that
    cannot be parsed raises InvalidResourceIDError.
    """
    if not node.provider_id:
        return None
    resource = parse_resource_id(node.provider_id)
    if resource.resource_type != VMSS_RESOURCE_TYPE:
        return None
    return make_vmss_id(resource)


def vmss_from_node_ref(nodes: NodeGetter, ref: str) -> Optional[str]:
    """Scale set ID of the named node; None if absent or not in a scale set."""
    try:
        node = nodes.get(ref)
    except NodeNotFoundError:
        return None
    return is_vmss(node)


def get_vmss_groups(nodes: NodeGetter, refs: Iterable[str]) -> VMSSGroupList:
    """Group node names by scale set, leaving out nodes not in one."""
    groups = VMSSGroupList()
    for ref in refs:
        vmss_id = vmss_from_node_ref(nodes, ref)
        if vmss_id is not None:
            groups.add_node(vmss_id, ref)
    return groups


def get_vmss_group_for_node(
    nodes: NodeGetter, groups: VMSSGroupList, ref: str
) -> Optional[VMSSGroup]:
    """Find the scale set group of a node, looking the node up if needed.

    A node found this way is added to ``groups`` so it is not parsed again.
    """
    group = groups.get_by_node(ref)
    if group is not None:
        return group
    vmss_id = vmss_from_node_ref(nodes, ref)
    if vmss_id is None:
        return None
    groups.add_node(vmss_id, ref)
    return groups.get(vmss_id)