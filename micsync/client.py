"""The sync loop that keeps identity assignments in line with pods and bindings."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol

from micsync.models import (
    AssignedIDState,
    AzureAssignedIdentity,
    AzureIdentity,
    AzureIdentityBinding,
    EventType,
    NodeChanges,
    Pod,
)
from micsync.nodeupdate import (
    CACHE_SYNC,
    CURRENT_STATE,
    FIND_TO_CREATE,
    FIND_TO_DELETE,
    SYSTEM,
    TOTAL,
    AssignedIdentityStore,
    CloudClient,
    EventRecorder,
    NodeUpdater,
    SyncStats,
)
from micsync.planning import (
    assigned_ids_to_create,
    assigned_ids_to_delete,
    assigned_ids_to_update,
    convert_id_list_to_map,
    create_desired_assigned_identities,
    generate_identity_assignment_diff,
    group_by_node,
    is_in_use,
)
from micsync.vmss import (
    InvalidResourceIDError,
    NodeGetter,
    VMSSGroupList,
    get_vmss_groups,
    get_vmss_name,
    is_vmss,
)

log = logging.getLogger(__name__)

DEFAULT_VERSION = "v0.0.0-dev"
_POLL_INTERVAL = 0.05
_SUMMARY_EVERY = 1000

State = dict[str, dict[str, bool]]


class _CRDClient(AssignedIdentityStore, Protocol):
    def sync_cache_all(self) -> None:
        ...

    def list_bindings(self) -> list[AzureIdentityBinding]:
        ...

    def list_ids(self) -> list[AzureIdentity]:
        ...

    def list_assigned_ids(self) -> list[AzureAssignedIdentity]:
        ...

    def list_assigned_ids_in_map(self) -> dict[str, AzureAssignedIdentity]:
        ...

    def upgrade_all(self) -> None:
        ...


class _PodLister(Protocol):
    def get_pods(self) -> list[Pod]:
        ...


class _ConfigMapStore(Protocol):
    def get(self, name: str) -> Optional[dict[str, str]]:
        """Data of the named config map, or None if it does not exist."""
        ...

    def create(self, name: str) -> dict[str, str]:
        ...

    def update(self, name: str, data: dict[str, str]) -> None:
        ...


@dataclass
class TypeUpgradeConfig:
    """Whether and how to record the one-off upgrade of stored objects."""

    status_key: str = "type_upgraded"
    enabled: bool = False
    config_map_name: str = "aad-pod-identity-config"


class SyncAlreadyRunningError(RuntimeError):
    """Raised when a second sync loop is started on the same client."""


class TypeUpgradeError(RuntimeError):
    """Raised when the stored objects could not be upgraded."""


class MICClient:
    """Works out identity assignments and applies them to nodes."""

    def __init__(
        self,
        crd: _CRDClient,
        cloud: CloudClient,
        pod_client: _PodLister,
        nodes: NodeGetter,
        recorder: EventRecorder,
        *,
        namespaced: bool = False,
        sync_retry_interval: float = 3600.0,
        identity_assignment_reconcile_interval: float = 180.0,
        create_delete_batch: int = 20,
        immutable_identities: Iterable[str] = (),
        cluster_identity: str = "",
        type_upgrade: Optional[TypeUpgradeConfig] = None,
        config_maps: Optional[_ConfigMapStore] = None,
        version: str = DEFAULT_VERSION,
        settle_delay: float = 0.2,
        events: Optional["queue.Queue[EventType]"] = None,
    ) -> None:
        self.crd = crd
        self.cloud = cloud
        self.pod_client = pod_client
        self.nodes = nodes
        self.recorder = recorder
        self.namespaced = namespaced
        self.sync_retry_interval = sync_retry_interval
        self.identity_assignment_reconcile_interval = identity_assignment_reconcile_interval
        self.type_upgrade = type_upgrade or TypeUpgradeConfig()
        if self.type_upgrade.enabled and config_maps is None:
            raise ValueError("type upgrade is enabled but no config map store was given")
        self.config_maps = config_maps
        self.version = version
        self.settle_delay = settle_delay
        self.events: "queue.Queue[EventType]" = events if events is not None else queue.Queue()
        self.immutable_identities = {item.lower() for item in immutable_identities}
        # The cluster identity is used for cloud operations; never remove it.
        if cluster_identity:
            self.immutable_identities.add(cluster_identity)
        self.stats = SyncStats()
        self.updater = NodeUpdater(
            cloud, crd, nodes, recorder, create_delete_batch, stats=self.stats
        )
        self.sync_loop_started = False
        self._sync_lock = threading.Lock()

    def is_identity_immutable(self, client_id: str) -> bool:
        """Whether the identity must never be removed from a node."""
        return client_id in self.immutable_identities

    def upgrade_type_if_required(self) -> bool:
        """Upgrade all stored objects once, recording it in a config map.

        Returns whether an upgrade was performed.
        """
        cfg = self.type_upgrade
        if not cfg.enabled or self.config_maps is None:
            return False
        try:
            data = self.config_maps.get(cfg.config_map_name)
        except Exception as exc:
            raise TypeUpgradeError(
                f"failed to get ConfigMap {cfg.config_map_name}, error: {exc}"
            ) from exc
        if data is None:
            try:
                data = self.config_maps.create(cfg.config_map_name)
            except Exception as exc:
                raise TypeUpgradeError(
                    f"failed to create ConfigMap {cfg.config_map_name}, error: {exc}"
                ) from exc
        data = dict(data or {})
        if cfg.status_key in data:
            log.info(
                "type upgrade status configmap found from version: %s. Skipping type upgrade!",
                data[cfg.status_key],
            )
            return False
        log.info("upgrading the types")
        try:
            self.crd.upgrade_all()
        except Exception as exc:
            raise TypeUpgradeError(f"failed to upgrade type, error: {exc}") from exc
        log.info("type upgrade completed")
        data[cfg.status_key] = self.version
        try:
            self.config_maps.update(cfg.config_map_name, data)
        except Exception as exc:
            raise TypeUpgradeError(
                f"failed to update ConfigMap key {cfg.status_key}, error: {exc}"
            ) from exc
        return True

    def sync_once(self) -> bool:
        """Run one sync cycle; returns whether any change had to be made."""
        self.stats.reset()
        begin = time.monotonic()

        started = time.monotonic()
        self.crd.sync_cache_all()
        self.stats.put(CACHE_SYNC, time.monotonic() - started)

        started = time.monotonic()
        pods = list(self.pod_client.get_pods())
        bindings = list(self.crd.list_bindings())
        identities = list(self.crd.list_ids())
        id_map = convert_id_list_to_map(identities)
        current = self.crd.list_assigned_ids_in_map()
        log.debug(
            "bindings: %d, identities: %d, assigned identities: %d",
            len(bindings),
            len(identities),
            len(current),
        )
        self.stats.put(SYSTEM, time.monotonic() - started)

        started = time.monotonic()
        desired, node_refs = create_desired_assigned_identities(
            pods, bindings, id_map, self.namespaced
        )
        self.stats.put(CURRENT_STATE, time.monotonic() - started)

        started = time.monotonic()
        add = assigned_ids_to_create(current, desired)
        self.stats.put(FIND_TO_CREATE, time.monotonic() - started)
        started = time.monotonic()
        delete = assigned_ids_to_delete(current, desired)
        self.stats.put(FIND_TO_DELETE, time.monotonic() - started)
        before, after = assigned_ids_to_update(add, delete)
        log.debug("del: %s, add: %s, update: %s", list(delete), list(add), list(after))

        node_map = group_by_node(add, delete, after)
        work_done = False
        if delete or before:
            work_done = True
            self._plan_removals(delete, before, after, desired, node_map, node_refs)
        if add or after:
            work_done = True
            self._plan_assignments(add, after, node_map)

        self.updater.consolidate_vmss_nodes(node_map)
        if node_map:
            with ThreadPoolExecutor(max_workers=len(node_map)) as pool:
                futures = [
                    pool.submit(self.updater.update_user_msi, desired, name, changes, node_refs)
                    for name, changes in node_map.items()
                ]
                for future in futures:
                    future.result()

        self.stats.put(TOTAL, time.monotonic() - begin)
        if work_done:
            log.info(
                "work done: True. Found %d pods, %d ids, %d bindings",
                len(pods),
                len(identities),
                len(bindings),
            )
        return work_done

    def _plan_removals(
        self,
        delete: Mapping[str, AzureAssignedIdentity],
        before: Mapping[str, AzureAssignedIdentity],
        after: Mapping[str, AzureAssignedIdentity],
        desired: Mapping[str, AzureAssignedIdentity],
        node_map: dict[str, NodeChanges],
        node_refs: Iterable[str],
    ) -> None:
        try:
            groups = get_vmss_groups(self.nodes, node_refs)
        except InvalidResourceIDError as exc:
            log.error("failed to get VMSS groups, error: %s", exc)
            return
        to_check = {**desired, **after}
        for assigned in [*delete.values(), *before.values()]:
            try:
                self._plan_removal(assigned, to_check, node_map, groups)
            except InvalidResourceIDError as exc:
                log.error("failed to check if identity should be removed, error: %s", exc)

    def _plan_removal(
        self,
        assigned: AzureAssignedIdentity,
        to_check: Mapping[str, AzureAssignedIdentity],
        node_map: dict[str, NodeChanges],
        groups: VMSSGroupList,
    ) -> None:
        in_use = is_in_use(assigned, to_check, self.nodes, groups)
        identity = assigned.identity
        # An empty status is treated as assigned for backward compatibility.
        if assigned.status in (AssignedIDState.ASSIGNED.value, ""):
            if (
                not in_use
                and identity.is_user_assigned_msi
                and not self.is_identity_immutable(identity.client_id)
            ):
                node_map.setdefault(assigned.node_name, NodeChanges()).remove_msi_ids.append(
                    identity.resource_id
                )
        log.debug("binding removed: %s", assigned.binding.name)

    def _plan_assignments(
        self,
        add: Mapping[str, AzureAssignedIdentity],
        after: Mapping[str, AzureAssignedIdentity],
        node_map: dict[str, NodeChanges],
    ) -> None:
        for assigned in [*add.values(), *after.values()]:
            if assigned.status in ("", AssignedIDState.CREATED.value):
                if assigned.identity.is_user_assigned_msi:
                    node_map.setdefault(assigned.node_name, NodeChanges()).add_msi_ids.append(
                        assigned.identity.resource_id
                    )
            log.debug("binding applied: %s", assigned.binding.name)

    def sync(self, stop: threading.Event) -> None:
        """Run sync cycles on events and timers until ``stop`` is set."""
        if not self._sync_lock.acquire(blocking=False):
            raise SyncAlreadyRunningError("concurrent syncs")
        try:
            log.info("sync thread started.")
            self.sync_loop_started = True
            total_cycles = 0
            work_cycles = 0
            now = time.monotonic()
            next_sync = now + self.sync_retry_interval
            next_reconcile = now + self.identity_assignment_reconcile_interval
            while not stop.is_set():
                now = time.monotonic()
                if now >= next_reconcile:
                    next_reconcile = now + self.identity_assignment_reconcile_interval
                    log.debug("reconciling identity assignment")
                    self.reconcile_identity_assignment()
                    continue
                if now >= next_sync:
                    next_sync = now + self.sync_retry_interval
                    log.debug("running periodic sync loop")
                else:
                    timeout = min(next_sync, next_reconcile, now + _POLL_INTERVAL) - now
                    try:
                        event = self.events.get(timeout=max(timeout, 0.0))
                    except queue.Empty:
                        continue
                    log.debug("received event: %s", event)
                if stop.is_set():
                    break
                total_cycles += 1
                try:
                    work_done = self.sync_once()
                except Exception as exc:
                    log.error("sync cycle failed, error: %s", exc)
                    continue
                if work_done or total_cycles % _SUMMARY_EVERY == 0:
                    if work_done:
                        work_cycles += 1
                    log.info(
                        "total work cycles: %d, out of which work was done in: %d",
                        total_cycles,
                        work_cycles,
                    )
                    if work_done and self.settle_delay > 0:
                        stop.wait(self.settle_delay)
        finally:
            self._sync_lock.release()

    def generate_identity_assignment_state(self) -> tuple[State, State, dict[str, bool]]:
        """Current and desired identities per node, and which nodes are scale sets.

        The stored assignments are the source of truth for the desired state.
        """
        node_cache: dict[str, tuple[str, bool]] = {}
        is_vmss_map: dict[str, bool] = {}
        current: State = {}
        desired: State = {}
        for assigned in self.crd.list_assigned_ids():
            if assigned.node_name not in node_cache:
                node = self.nodes.get(assigned.node_name)
                vmss_id = is_vmss(node)
                if vmss_id is not None:
                    node_cache[assigned.node_name] = (get_vmss_name(vmss_id), True)
                else:
                    node_cache[assigned.node_name] = (assigned.node_name, False)
            name, vmss = node_cache[assigned.node_name]
            is_vmss_map[name] = vmss

            # Only ASSIGNED entries count; CREATED ones are in flight or failing.
            if (
                assigned.status == AssignedIDState.ASSIGNED.value
                and assigned.identity.is_user_assigned_msi
            ):
                desired.setdefault(name, {})[assigned.identity.resource_id] = True

            if name not in current:
                current[name] = {rid: True for rid in self.cloud.get_user_msis(name, vmss)}
        return current, desired, is_vmss_map

    def reconcile_identity_assignment(self) -> dict[str, list[str]]:
        """Assign identities that nodes should hold but do not.

        Returns the identities it tried to assign, by node or scale set name.
        """
        try:
            current, desired, is_vmss_map = self.generate_identity_assignment_state()
        except Exception as exc:
            log.error("failed to generate identity assignment state, error: %s", exc)
            return {}
        diff = generate_identity_assignment_diff(current, desired)
        for name, to_assign in diff.items():
            log.info("reconciling identity assignment for %s on node %s", to_assign, name)
            try:
                self.cloud.update_user_msi(to_assign, [], name, is_vmss_map.get(name, False))
            except Exception as exc:
                log.error("failed to update user-assigned identities on node %s, error: %s", name, exc)
        return diff