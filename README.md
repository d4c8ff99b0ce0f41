# micsync

`micsync` is the reconciliation core of a managed-identity controller. It works
out which pods should receive which identities and which nodes or scale sets
those identities must be attached to. It then drives the changes through cloud
and storage clients that you supply.

## Modules

- `micsync.models` holds the data model. `AzureIdentity`, `AzureIdentityBinding`
  and `AzureAssignedIdentity` describe identities, the selectors that bind them
  to pods, and the resulting per-pod assignments. `Pod` and `Node` are light
  records of cluster objects. `NodeChanges` collects the pending changes for one
  node or scale set. `AssignedIDState` gives the assignment states `Created`,
  `Assigned` and `Unassigned`.
- `micsync.vmss` parses provider resource IDs (`parse_resource_id`). It groups
  nodes by the scale set they belong to (`is_vmss`, `get_vmss_groups`,
  `get_vmss_group_for_node`, `get_vmss_name`), because scale-set identities
  apply to every instance in the set. `NodeCache` is a thread-safe in-memory
  node store. Its `get` raises `NodeNotFoundError` for unknown nodes.
- `micsync.planning` holds the pure decision logic:
  - `create_desired_assigned_identities` computes the assignments that should
    exist and the nodes involved.
  - `assigned_ids_to_create`, `assigned_ids_to_delete` and
    `assigned_ids_to_update` diff the desired assignments against the current
    ones.
  - `group_by_node` splits those changes per node.
  - `is_in_use` keeps an identity attached while another pod on the same node or
    scale set still uses it.
  - `generate_identity_assignment_diff` lists identities a node should hold but
    does not.
- `micsync.nodeupdate.NodeUpdater` applies the per-node changes. It works through
  a `CloudClient`, an `AssignedIdentityStore` and an `EventRecorder`, all of them
  protocols. It runs at most `batch_size` store calls at a time. It keeps counts
  in a `SyncStats`.
- `micsync.client.MICClient` ties everything together:
  - `sync_once()` runs one reconciliation cycle and returns whether any change
    was needed.
  - `sync(stop)` runs cycles on queued events and on a retry timer until the
    `threading.Event` is set. A second concurrent `sync` raises
    `SyncAlreadyRunningError`.
  - `reconcile_identity_assignment()` re-attaches identities that stored
    `Assigned` records say a node should hold but the cloud does not. It returns
    what it tried to assign.
  - `upgrade_type_if_required()` performs a one-off upgrade recorded in a
    config map when a `TypeUpgradeConfig` enables it. It raises
    `TypeUpgradeError` on failure.

## Examples

```python
from micsync.models import Node
from micsync.vmss import NodeCache, get_vmss_name, is_vmss

nodes = NodeCache()
nodes.add(Node(
    name="node-0",
    provider_id="azure:///subscriptions/sub/resourceGroups/rg/providers/"
                "Microsoft.Compute/virtualMachineScaleSets/pool1/virtualMachines/0",
))

vmss_id = is_vmss(nodes.get("node-0"))
print(vmss_id, get_vmss_name(vmss_id))   # sub/rg/pool1 pool1
```

```python
from micsync.planning import generate_identity_assignment_diff

current = {"node-0": {"id-0": True}}
desired = {"node-0": {"id-0": True, "id-1": True}}
print(generate_identity_assignment_diff(current, desired))   # {'node-0': ['id-1']}
```

## Building a client

`MICClient(crd, cloud, pod_client, nodes, recorder, ...)` takes the following
objects, which you implement:

- `crd` must provide the `AssignedIdentityStore` methods. It must also provide
  `sync_cache_all`, `list_bindings`, `list_ids`, `list_assigned_ids`,
  `list_assigned_ids_in_map` and `upgrade_all`.
- `cloud` is a `CloudClient` with `update_user_msi` and `get_user_msis`.
- `pod_client` has `get_pods()`.
- `nodes` has `get(name)`, for example a `NodeCache`.
- `recorder` has `event(obj, event_type, reason, message)`.

Keyword options:

| Option | Default | Meaning |
| --- | --- | --- |
| `namespaced` | `False` | Match identities only within their namespace. |
| `sync_retry_interval` | 3600 s | Interval of the periodic sync. |
| `identity_assignment_reconcile_interval` | 180 s | Interval of the reconcile pass. |
| `create_delete_batch` | 20 | Batch size for store calls. |
| `immutable_identities` | none | Client IDs that are never removed from nodes. |
| `cluster_identity` | none | Client ID that is never removed from nodes. |
| `type_upgrade` | disabled | A `TypeUpgradeConfig`. |
| `config_maps` | none | Config map store; required when the type upgrade is enabled. |
| `events` | new queue | A `queue.Queue` of `EventType` values that trigger cycles. |

## What it does not do

`micsync` does not talk to a cluster or a cloud by itself. It has no watchers or
informers, no leader election, no metrics export and no command-line program.
Every client it uses must be supplied by the caller.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```