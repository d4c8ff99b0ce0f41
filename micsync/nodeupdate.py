"""Applying pending identity changes to nodes and scale sets."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from micsync.models import (
    AssignedIDState,
    AzureAssignedIdentity,
    AzureIdentity,
    NodeChanges,
)
from micsync.planning import is_in_use, unique_ids
from micsync.vmss import (
    InvalidResourceIDError,
    NodeGetter,
    NodeNotFoundError,
    get_vmss_groups,
    get_vmss_name,
    is_vmss,
)

log = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

CACHE_SYNC = "cache_sync"
SYSTEM = "system"
CURRENT_STATE = "current_state"
TOTAL = "total"
FIND_TO_CREATE = "find_azure_assigned_identities_to_create"
FIND_TO_DELETE = "find_azure_assigned_identities_to_delete"
TOTAL_CREATED = "total_azure_assigned_identities_created"
TOTAL_UPDATED = "total_azure_assigned_identities_updated"
TOTAL_DELETED = "total_azure_assigned_identities_deleted"
TOTAL_CREATE_OR_UPDATE = "total_azure_assigned_identities_create_or_update"


class EventRecorder(Protocol):
    """Records cluster events about objects."""

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        """Record one event of ``event_type`` about ``obj``."""
        ...


class CloudClient(Protocol):
    """Assigns and removes user-assigned identities on VMs and scale sets."""

    def update_user_msi(
        self, add: Sequence[str], remove: Sequence[str], name: str, is_vmss: bool
    ) -> None:
        """Assign ``add`` and remove ``remove`` on the named VM or scale set."""
        ...

    def get_user_msis(self, name: str, is_vmss: bool) -> list[str]:
        """Resource IDs of the identities assigned to the VM or scale set."""
        ...


class AssignedIdentityStore(Protocol):
    """Where AzureAssignedIdentity objects are kept."""

    def create_assigned_identity(self, assigned: AzureAssignedIdentity) -> None:
        ...

    def update_assigned_identity(self, assigned: AzureAssignedIdentity) -> None:
        ...

    def remove_assigned_identity(self, assigned: AzureAssignedIdentity) -> None:
        ...

    def update_assigned_identity_status(
        self, assigned: AzureAssignedIdentity, status: str
    ) -> None:
        ...


class SyncStats:
    """Thread-safe counters and timings for one sync cycle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._durations: dict[str, float] = {}

    def increment(self, key: str, count: int = 1) -> None:
        with self._lock:
            self._counts[key] += count

    def put(self, key: str, seconds: float) -> None:
        with self._lock:
            self._durations[key] = seconds

    def count(self, key: str) -> int:
        with self._lock:
            return self._counts[key]

    def duration(self, key: str) -> Optional[float]:
        with self._lock:
            return self._durations.get(key)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._durations.clear()

    def snapshot(self) -> dict[str, float]:
        """All counts and durations recorded so far."""
        with self._lock:
            return {**self._durations, **self._counts}


def _msi_exists_on_node(identity: AzureIdentity, msi_ids: Iterable[str]) -> bool:
    wanted = identity.resource_id.casefold()
    return any(msi.casefold() == wanted for msi in msi_ids)


class NodeUpdater:
    """Applies the changes planned for each node or scale set."""

    def __init__(
        self,
        cloud: CloudClient,
        store: AssignedIdentityStore,
        nodes: NodeGetter,
        recorder: EventRecorder,
        batch_size: int,
        stats: Optional[SyncStats] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.cloud = cloud
        self.store = store
        self.nodes = nodes
        self.recorder = recorder
        self.batch_size = batch_size
        self.stats = stats if stats is not None else SyncStats()

    def _run_batched(self, jobs: Sequence[Callable[[], None]]) -> None:
        """Run the jobs with at most ``batch_size`` in flight, waiting for all."""
        if not jobs:
            return
        with ThreadPoolExecutor(max_workers=min(self.batch_size, len(jobs))) as pool:
            list(pool.map(lambda job: job(), jobs))

    def consolidate_vmss_nodes(self, node_map: dict[str, NodeChanges]) -> list[str]:
        """Merge the changes of scale set nodes under the scale set name.

        Nodes no longer in the cluster are removed from ``node_map`` and
        their assignments cleaned up; their names are returned.
        """
        members: dict[str, list[str]] = {}
        removed: list[str] = []
        for node_name, changes in list(node_map.items()):
            try:
                node = self.nodes.get(node_name)
            except NodeNotFoundError as exc:
                log.warning(
                    "failed to get node %s while updating user-assigned identities, error: %s",
                    node_name,
                    exc,
                )
                del node_map[node_name]
                self.clean_up_node(node_name, changes)
                removed.append(node_name)
                continue
            except Exception as exc:
                log.error("failed to get node %s, error: %s", node_name, exc)
                continue
            try:
                vmss_id = is_vmss(node)
            except InvalidResourceIDError as exc:
                log.error("failed to check if node %s is VMSS, error: %s", node_name, exc)
                continue
            if vmss_id is not None:
                members.setdefault(vmss_id, []).append(node_name)

        for vmss_id, vmss_nodes in members.items():
            merged = NodeChanges(is_vmss=True)
            for vmss_node in vmss_nodes:
                changes = node_map.pop(vmss_node, None)
                if changes is not None:
                    merged.merge(changes)
            node_map[get_vmss_name(vmss_id)] = merged
        return removed

    def clean_up_node(self, node_name: str, changes: NodeChanges) -> None:
        """Delete every assignment pending deletion on a node that is gone."""
        log.info("deleting all assigned identities for %s as node not found", node_name)
        for assigned in changes.to_delete:
            binding = assigned.binding
            try:
                self.store.remove_assigned_identity(assigned)
            except Exception as exc:
                message = (
                    f"failed to remove AzureIdentityBinding {binding.namespace}/{binding.name} "
                    f"from node {assigned.node_name} for pod "
                    f"{assigned.pod_namespace}/{assigned.pod}, error: {exc}"
                )
                self.recorder.event(binding, EVENT_WARNING, "binding remove error", message)
                log.error(message)
                continue
            self.recorder.event(
                binding,
                EVENT_NORMAL,
                "binding removed",
                f"Binding {binding.name} removed from node {assigned.node_name} for pod {assigned.pod}",
            )

    def _create(self, assigned: AzureAssignedIdentity) -> None:
        if assigned.status:
            return
        binding = assigned.binding
        log.debug(
            "initiating AzureAssignedIdentity creation for pod - %s, binding - %s",
            assigned.pod,
            binding.name,
        )
        created = dataclasses.replace(assigned, status=AssignedIDState.CREATED.value)
        try:
            self.store.create_assigned_identity(created)
        except Exception as exc:
            message = (
                f"failed to create AzureAssignedIdentity {assigned.name}/{assigned.namespace} "
                f"for pod {assigned.pod_namespace}/{assigned.pod}, error: {exc}"
            )
            self.recorder.event(binding, EVENT_WARNING, "binding apply error", message)
            log.error(message)

    def _update(self, assigned: AzureAssignedIdentity) -> None:
        if assigned.status:
            return
        binding = assigned.binding
        log.debug(
            "initiating assigned id creation for pod - %s, binding - %s",
            assigned.pod,
            binding.name,
        )
        updated = dataclasses.replace(assigned, status=AssignedIDState.CREATED.value)
        try:
            self.store.update_assigned_identity(updated)
        except Exception as exc:
            message = (
                f"failed to update AzureAssignedIdentity {assigned.namespace}/{assigned.name} "
                f"for pod {assigned.pod}/{assigned.pod_namespace}, error: {exc}"
            )
            self.recorder.event(binding, EVENT_WARNING, "binding apply error", message)
            log.error(message)

    def _set_status(self, assigned: AzureAssignedIdentity, state: AssignedIDState) -> None:
        self.store.update_assigned_identity_status(dataclasses.replace(assigned), state.value)

    def _mark_assigned(self, assigned: AzureAssignedIdentity) -> None:
        binding = assigned.binding
        try:
            self._set_status(assigned, AssignedIDState.ASSIGNED)
        except Exception as exc:
            message = (
                f"failed to update AzureAssignedIdentity {assigned.namespace}/{assigned.name} "
                f"status to {AssignedIDState.ASSIGNED.value} for pod {assigned.pod}, error: {exc}"
            )
            self.recorder.event(assigned, EVENT_WARNING, "status update error", message)
            log.error(message)
            return
        self.recorder.event(
            binding,
            EVENT_NORMAL,
            "binding applied",
            f"Binding {binding.name} applied on node {assigned.node_name} for pod {assigned.name}",
        )

    def _unassign_and_remove(self, assigned: AzureAssignedIdentity) -> None:
        try:
            self._set_status(assigned, AssignedIDState.UNASSIGNED)
        except Exception as exc:
            message = (
                f"failed to update AzureAssignedIdentity {assigned.namespace}/{assigned.name} "
                f"status to {AssignedIDState.UNASSIGNED.value} for pod "
                f"{assigned.pod_namespace}/{assigned.pod}, error: {exc}"
            )
            self.recorder.event(assigned, EVENT_WARNING, "status update error", message)
            log.error(message)
            return
        try:
            self.store.remove_assigned_identity(assigned)
        except Exception as exc:
            log.error(
                "failed to remove AzureAssignedIdentity %s/%s, error: %s",
                assigned.namespace,
                assigned.name,
                exc,
            )
            return
        log.info("deleted assigned identity %s/%s", assigned.namespace, assigned.name)

    def update_user_msi(
        self,
        new_assigned_ids: Mapping[str, AzureAssignedIdentity],
        name: str,
        changes: NodeChanges,
        node_refs: Iterable[str],
    ) -> bool:
        """Apply the changes for one node or scale set.

        Returns whether the cloud update itself succeeded. On failure the
        cloud state is read back and each assignment is settled by what is
        actually present on the node.
        """
        begin = time.monotonic()
        node_refs = list(node_refs)
        log.info(
            "processing node %s, add [%d], del [%d], update [%d]",
            name,
            len(changes.to_create),
            len(changes.to_delete),
            len(changes.to_update),
        )

        self._run_batched(
            [partial(self._create, a) for a in changes.to_create]
            + [partial(self._update, a) for a in changes.to_update]
        )

        add_ids = unique_ids(changes.add_msi_ids)
        remove_ids = unique_ids(changes.remove_msi_ids)
        create_or_update = [*changes.to_create, *changes.to_update]

        try:
            self.cloud.update_user_msi(add_ids, remove_ids, name, changes.is_vmss)
        except Exception as err:
            log.error(
                "failed to update user-assigned identities on node %s "
                "(add [%d], del [%d], update[%d]), error: %s",
                name,
                len(changes.to_create),
                len(changes.to_delete),
                len(changes.to_update),
                err,
            )
            self._settle_after_failure(new_assigned_ids, name, changes, node_refs, create_or_update, err)
            self.stats.put(TOTAL_CREATE_OR_UPDATE, time.monotonic() - begin)
            return False

        self._run_batched([partial(self._mark_assigned, a) for a in create_or_update])
        self._run_batched([partial(self._unassign_and_remove, a) for a in changes.to_delete])

        self.stats.increment(TOTAL_CREATED, len(changes.to_create))
        self.stats.increment(TOTAL_UPDATED, len(changes.to_update))
        self.stats.increment(TOTAL_DELETED, len(changes.to_delete))
        self.stats.put(TOTAL_CREATE_OR_UPDATE, time.monotonic() - begin)
        return True

    def _settle_after_failure(
        self,
        new_assigned_ids: Mapping[str, AzureAssignedIdentity],
        name: str,
        changes: NodeChanges,
        node_refs: list[str],
        create_or_update: list[AzureAssignedIdentity],
        err: Exception,
    ) -> None:
        try:
            msi_ids = self.cloud.get_user_msis(name, changes.is_vmss)
        except Exception as get_err:
            log.error(
                "failed to get a list of user-assigned identities from node %s, error: %s",
                name,
                get_err,
            )
            return

        for assigned in create_or_update:
            identity = assigned.identity
            binding = assigned.binding
            if identity.is_user_assigned_msi and not _msi_exists_on_node(identity, msi_ids):
                message = (
                    f"failed to apply binding {binding.namespace}/{binding.name} node "
                    f"{assigned.node_name} for pod {assigned.pod_namespace}/{assigned.pod}, "
                    f"error: {err}"
                )
                self.recorder.event(binding, EVENT_WARNING, "binding apply error", message)
                log.error(message)
                continue
            self.recorder.event(
                binding,
                EVENT_NORMAL,
                "binding applied",
                f"binding {binding.name} applied on node {assigned.node_name} for pod {assigned.name}",
            )
            log.info(
                "identity %s/%s has successfully been assigned to node %s",
                identity.namespace,
                identity.name,
                assigned.node_name,
            )
            is_create = any(item is assigned for item in changes.to_create)
            try:
                self._set_status(assigned, AssignedIDState.ASSIGNED)
            except Exception as update_err:
                message = (
                    f"failed to update AzureAssignedIdentity {assigned.namespace}/{assigned.name} "
                    f"status to {AssignedIDState.ASSIGNED.value} for pod "
                    f"{assigned.pod_namespace}/{assigned.pod}, error: {update_err}"
                )
                self.recorder.event(assigned, EVENT_WARNING, "status update error", message)
                log.error(message)
            self.stats.increment(TOTAL_CREATED if is_create else TOTAL_UPDATED, 1)

        for assigned in changes.to_delete:
            identity = assigned.identity
            exists = _msi_exists_on_node(identity, msi_ids)
            try:
                groups = get_vmss_groups(self.nodes, node_refs)
                in_use = is_in_use(assigned, new_assigned_ids, self.nodes, groups)
            except InvalidResourceIDError as check_err:
                log.error("failed to check if identity is in use, error: %s", check_err)
                continue
            if identity.is_user_assigned_msi and not in_use and exists:
                log.error(
                    "failed to remove AzureIdentityBinding %s from node %s for pod %s/%s, error: %s",
                    assigned.binding.name,
                    assigned.node_name,
                    assigned.pod_namespace,
                    assigned.pod,
                    err,
                )
                continue
            log.info(
                "updating msis on node %s failed, but identity %s/%s has successfully been removed from node",
                assigned.node_name,
                identity.namespace,
                identity.name,
            )
            try:
                self.store.remove_assigned_identity(assigned)
            except Exception as remove_err:
                log.error("failed to remove AzureAssignedIdentity %s, error: %s", assigned.name, remove_err)
                continue
            log.info("deleted assigned identity %s/%s", assigned.namespace, assigned.name)
            self.stats.increment(TOTAL_DELETED, 1)