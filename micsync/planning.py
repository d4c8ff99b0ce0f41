"""Working out which identity assignments should exist and what must change."""

from __future__ import annotations

import copy
import dataclasses
import logging
from collections import defaultdict
from typing import Iterable, Mapping, Optional

from micsync.models import (
    NODE_NAME_LABEL,
    AssignedIDState,
    AzureAssignedIdentity,
    AzureIdentity,
    AzureIdentityBinding,
    IdentityType,
    NodeChanges,
    ObjectMeta,
    Pod,
    get_id_key,
    is_namespaced_identity,
    sort_bindings,
)
from micsync.vmss import (
    NodeGetter,
    ResourceID,
    VMSSGroupList,
    get_vmss_group_for_node,
    parse_resource_id,
)

log = logging.getLogger(__name__)

AssignedIDMap = dict[str, AzureAssignedIdentity]


def validate_resource_id(resource_id: str) -> ResourceID:
    """Check that a user-assigned identity's resource ID is well formed.

    Returns the parsed ID; raises InvalidResourceIDError otherwise.
    """
    return parse_resource_id(resource_id)


def convert_id_list_to_map(identities: Iterable[AzureIdentity]) -> dict[str, AzureIdentity]:
    """Index identities by "namespace/name", dropping ones with a bad resource ID."""
    result: dict[str, AzureIdentity] = {}
    for identity in identities:
        if identity.is_user_assigned_msi:
            try:
                validate_resource_id(identity.resource_id)
            except ValueError as exc:
                log.error(
                    "ignoring azure identity %s/%s, error: %s",
                    identity.namespace,
                    identity.name,
                    exc,
                )
                continue
        result[get_id_key(identity.namespace, identity.name)] = identity
    return result


def make_assigned_id_name(pod_name: str, pod_namespace: str, identity_name: str) -> str:
    """Name of the assignment of an identity to a pod."""
    return f"{pod_name}-{pod_namespace}-{identity_name}"


def make_assigned_identity(
    identity: AzureIdentity,
    binding: AzureIdentityBinding,
    pod_name: str,
    pod_namespace: str,
    node_name: str,
    namespaced: bool,
) -> AzureAssignedIdentity:
    """Build the assignment of ``identity`` to a pod through ``binding``."""
    identity_copy = copy.deepcopy(identity)
    if namespaced or is_namespaced_identity(identity_copy):
        namespace = identity.namespace
    else:
        # Kept as "default" for compatibility with existing assignments.
        namespace = "default"
    assigned = AzureAssignedIdentity(
        meta=ObjectMeta(
            name=make_assigned_id_name(pod_name, pod_namespace, identity.name),
            namespace=namespace,
            labels={NODE_NAME_LABEL: node_name},
        ),
        identity=identity_copy,
        binding=copy.deepcopy(binding),
        pod=pod_name,
        pod_namespace=pod_namespace,
        node_name=node_name,
        available_replicas=1,
    )
    log.debug("making assigned ID: %s", assigned)
    return assigned


def create_desired_assigned_identities(
    pods: Iterable[Pod],
    bindings: Iterable[AzureIdentityBinding],
    id_map: Mapping[str, AzureIdentity],
    namespaced: bool,
) -> tuple[AssignedIDMap, set[str]]:
    """Work out every assignment that should exist for the given pods.

    Returns the assignments by name and the names of the nodes that hold
    pods matched by at least one binding.
    """
    bindings = list(bindings)
    node_refs: set[str] = set()
    desired: AssignedIDMap = {}

    for pod in pods:
        if not pod.node_name:
            log.info("pod %s/%s has no assigned node yet. it will be ignored", pod.namespace, pod.name)
            continue
        selector = pod.binding_selector
        if not selector:
            log.info("pod %s/%s doesn't contain a binding label. it will be ignored", pod.namespace, pod.name)
            continue

        matched = [binding for binding in bindings if binding.selector == selector]
        if not matched:
            log.info(
                "no AzureIdentityBinding found for pod %s/%s that matches selector: %s. it will be ignored",
                pod.namespace,
                pod.name,
                selector,
            )
            continue
        node_refs.add(pod.node_name)

        for binding in sort_bindings(matched):
            identity = id_map.get(get_id_key(binding.namespace, binding.azure_identity))
            if identity is None:
                log.info(
                    "%s identity not found when using %s/%s binding",
                    binding.azure_identity,
                    binding.namespace,
                    binding.name,
                )
                continue
            if namespaced or is_namespaced_identity(identity):
                if not (identity.namespace == binding.namespace == pod.namespace):
                    log.debug(
                        "identity %s/%s matched via binding %s/%s to %s/%s but namespaced identity is enforced",
                        identity.namespace,
                        identity.name,
                        binding.namespace,
                        binding.name,
                        pod.namespace,
                        pod.name,
                    )
                    continue
            assigned = make_assigned_identity(
                identity, binding, pod.name, pod.namespace, pod.node_name, namespaced
            )
            existing = desired.get(assigned.name)
            if existing is not None:
                log.warning(
                    "AzureIdentity %s exists in both %s and %s namespace. "
                    "Consider renaming it or enabling namespaced mode",
                    identity.name,
                    existing.identity.namespace,
                    identity.namespace,
                )
            else:
                desired[assigned.name] = assigned
    return desired, node_refs


def match_assigned_id(x: AzureAssignedIdentity, y: AzureAssignedIdentity) -> bool:
    """Whether two assignments refer to the same versions of everything."""
    return (
        x.binding.name == y.binding.name
        and x.binding.resource_version == y.binding.resource_version
        and x.identity.name == y.identity.name
        and x.identity.resource_version == y.identity.resource_version
        and x.pod == y.pod
        and x.pod_namespace == y.pod_namespace
        and x.node_name == y.node_name
    )


def assigned_ids_to_create(old: Mapping[str, AzureAssignedIdentity], new: Mapping[str, AzureAssignedIdentity]) -> AssignedIDMap:
    """Assignments in ``new`` that still need creating or assigning."""
    if not old:
        return dict(new)
    create: AssignedIDMap = {}
    for name, new_assigned in new.items():
        old_assigned = old.get(name)
        matched = old_assigned is not None and match_assigned_id(old_assigned, new_assigned)
        if matched and old_assigned.status == AssignedIDState.CREATED.value:
            # Created but never assigned to the node: retry the assignment.
            create[name] = old_assigned
        if not matched:
            create[name] = new_assigned
    return create


def assigned_ids_to_delete(old: Mapping[str, AzureAssignedIdentity], new: Mapping[str, AzureAssignedIdentity]) -> AssignedIDMap:
    """Assignments in ``old`` that are no longer wanted as they are."""
    if not old:
        return {}
    if not new:
        return dict(old)
    delete: AssignedIDMap = {}
    for name, old_assigned in old.items():
        new_assigned = new.get(name)
        if new_assigned is not None and match_assigned_id(old_assigned, new_assigned):
            continue
        delete[name] = old_assigned
    return delete


def assigned_ids_to_update(
    add: AssignedIDMap, delete: AssignedIDMap
) -> tuple[AssignedIDMap, AssignedIDMap]:
    """Move assignments present in both ``add`` and ``delete`` into updates.

    Returns the assignments as they stand and as they should become. Names
    found in both are removed from ``add`` and ``delete``.
    """
    before: AssignedIDMap = {}
    after: AssignedIDMap = {}
    if not add or not delete:
        return before, after
    for name in [name for name in add if name in delete]:
        added = add.pop(name)
        deleted = delete.pop(name)
        # Labels come from the new version: the pod may have moved node.
        meta = dataclasses.replace(deleted.meta, labels=added.meta.labels)
        before[name] = deleted
        after[name] = dataclasses.replace(added, meta=meta)
    return before, after


def group_by_node(
    add: Mapping[str, AzureAssignedIdentity],
    delete: Mapping[str, AzureAssignedIdentity],
    update: Mapping[str, AzureAssignedIdentity],
) -> dict[str, NodeChanges]:
    """Split assignments to create, delete and update by node."""
    node_map: defaultdict[str, NodeChanges] = defaultdict(NodeChanges)
    for assigned in add.values():
        node_map[assigned.node_name].to_create.append(assigned)
    for assigned in delete.values():
        node_map[assigned.node_name].to_delete.append(assigned)
    for assigned in update.values():
        node_map[assigned.node_name].to_update.append(assigned)
    return dict(node_map)


def is_in_use(
    check: AzureAssignedIdentity,
    assigned_ids: Mapping[str, AzureAssignedIdentity],
    nodes: NodeGetter,
    groups: VMSSGroupList,
) -> bool:
    """Whether another pod on the same node or scale set uses the identity."""
    for assigned in assigned_ids.values():
        if check.identity.type != IdentityType.USER_ASSIGNED_MSI:
            continue
        if check.pod == assigned.pod:
            continue
        if check.identity.client_id != assigned.identity.client_id:
            continue
        if check.node_name == assigned.node_name:
            return True
        group = get_vmss_group_for_node(nodes, groups, check.node_name)
        if group is not None and group.has_node(assigned.node_name):
            return True
    return False


def unique_ids(ids: Iterable[str]) -> list[str]:
    """The IDs with duplicates removed, first occurrence kept."""
    return list(dict.fromkeys(ids))


def generate_identity_assignment_diff(
    current_state: Optional[Mapping[str, Mapping[str, bool]]],
    desired_state: Optional[Mapping[str, Mapping[str, bool]]],
) -> dict[str, list[str]]:
    """Identities each node should have but does not, by node name."""
    current_state = current_state or {}
    diff: dict[str, list[str]] = {}
    for node_name, resource_ids in (desired_state or {}).items():
        present = current_state.get(node_name, {})
        missing = [rid for rid in resource_ids if not present.get(rid)]
        if missing:
            diff[node_name] = missing
    return diff