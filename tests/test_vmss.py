import pytest

from micsync.models import Node
from micsync.vmss import (
    VMSS_RESOURCE_TYPE,
    InvalidResourceIDError,
    NodeCache,
    NodeNotFoundError,
    VMSSGroup,
    VMSSGroupList,
    get_vmss_group_for_node,
    get_vmss_groups,
    get_vmss_name,
    is_vmss,
    make_vmss_id,
    parse_resource_id,
    vmss_from_node_ref,
)

VMSS1_NODE0 = (
    "azure:///subscriptions/fakeSub/resourceGroups/fakeGroup/providers/"
    "Microsoft.Compute/virtualMachineScaleSets/testvmss1/virtualMachines/0"
)
VMSS1_NODE1 = (
    "azure:///subscriptions/fakeSub/resourceGroups/fakeGroup/providers/"
    "Microsoft.Compute/virtualMachineScaleSets/testvmss1/virtualMachines/1"
)
VMSS2_NODE0 = (
    "azure:///subscriptions/fakeSub/resourceGroups/fakeGroup/providers/"
    "Microsoft.Compute/virtualMachineScaleSets/testvmss2/virtualMachines/0"
)
VM_NODE = (
    "azure:///subscriptions/testSub/resourceGroups/fakeGroup/providers/"
    "Microsoft.Compute/virtualMachines/test-node"
)
TEST_RESOURCE_ID = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourcegroups/rg/providers/"
    "Microsoft.ManagedIdentity/userAssignedIdentities/identity1"
)


@pytest.fixture
def nodes():
    return NodeCache(
        [
            Node("test-node1", VMSS1_NODE0),
            Node("test-node2", VMSS1_NODE1),
            Node("test-node3", VMSS2_NODE0),
            Node("test-node", VM_NODE),
        ]
    )


def test_parse_vmss_provider_id():
    resource = parse_resource_id(VMSS1_NODE0)
    assert resource.subscription_id == "fakeSub"
    assert resource.resource_group == "fakeGroup"
    assert resource.provider == "Microsoft.Compute"
    assert resource.resource_type == VMSS_RESOURCE_TYPE
    assert resource.resource_name == "testvmss1"


def test_parse_vm_provider_id():
    resource = parse_resource_id(VM_NODE)
    assert resource.resource_type == "virtualMachines"
    assert resource.resource_name == "test-node"


def test_parse_is_case_insensitive_on_keywords():
    resource = parse_resource_id(TEST_RESOURCE_ID)
    assert resource.resource_group == "rg"
    assert resource.resource_name == "identity1"


def test_parse_invalid_resource_id_raises():
    with pytest.raises(InvalidResourceIDError):
        parse_resource_id("testResourceID")


def test_vmss_id_round_trips_to_name():
    vmss_id = make_vmss_id(parse_resource_id(VMSS1_NODE0))
    assert vmss_id == "fakeSub/fakeGroup/testvmss1"
    assert get_vmss_name(vmss_id) == "testvmss1"


def test_is_vmss_for_scale_set_node():
    assert is_vmss(Node("n", VMSS2_NODE0)) == make_vmss_id(parse_resource_id(VMSS2_NODE0))


def test_is_vmss_for_plain_vm_is_none():
    assert is_vmss(Node("n", VM_NODE)) is None


def test_is_vmss_with_empty_provider_is_none():
    assert is_vmss(Node("n")) is None


def test_is_vmss_with_bad_provider_raises():
    with pytest.raises(InvalidResourceIDError):
        is_vmss(Node("n", "garbage"))


def test_node_cache_get_add_remove():
    cache = NodeCache()
    with pytest.raises(NodeNotFoundError) as info:
        cache.get("test-node")
    assert info.value.name == "test-node"
    node = Node("test-node", VM_NODE)
    cache.add(node)
    assert cache.get("test-node") is node
    assert "test-node" in cache and len(cache) == 1
    cache.remove("test-node")
    assert "test-node" not in cache
    cache.remove("test-node")
    assert len(cache) == 0


def test_vmss_from_node_ref_missing_node_is_none(nodes):
    assert vmss_from_node_ref(nodes, "missing") is None
    assert vmss_from_node_ref(nodes, "test-node") is None
    assert get_vmss_name(vmss_from_node_ref(nodes, "test-node2")) == "testvmss1"


def test_group_list_indexes_nodes():
    groups = VMSSGroupList()
    groups.add_node("sub/rg/a", "n1")
    groups.add_node("sub/rg/a", "n2")
    group = groups.get("sub/rg/a")
    assert group is groups.get_by_node("n1") is groups.get_by_node("n2")
    assert group.has_node("n2")
    assert not group.has_node("n3")
    assert groups.get_by_node("n3") is None
    assert groups.get("sub/rg/b") is None


def test_empty_group_has_no_nodes():
    assert VMSSGroup().has_node("test-node1") is False


def test_get_vmss_groups_groups_scale_set_nodes(nodes):
    groups = get_vmss_groups(
        nodes, ["test-node1", "test-node2", "test-node3", "test-node", "missing"]
    )
    assert {get_vmss_name(key) for key in groups.groups} == {"testvmss1", "testvmss2"}
    first = groups.get_by_node("test-node1")
    assert first is groups.get_by_node("test-node2")
    assert first.nodes == {"test-node1", "test-node2"}
    assert groups.get_by_node("test-node3").nodes == {"test-node3"}
    assert groups.get_by_node("test-node") is None
    assert groups.get_by_node("missing") is None


def test_get_vmss_groups_propagates_invalid_provider():
    cache = NodeCache([Node("bad", "garbage")])
    with pytest.raises(InvalidResourceIDError):
        get_vmss_groups(cache, ["bad"])


def test_group_for_unreferenced_node_is_cached(nodes):
    groups = get_vmss_groups(nodes, ["test-node1"])
    group = get_vmss_group_for_node(nodes, groups, "test-node2")
    assert group is groups.get_by_node("test-node1")
    assert group.nodes == {"test-node1", "test-node2"}
    assert groups.get_by_node("test-node2") is group


def test_group_for_node_outside_scale_set_is_none(nodes):
    groups = VMSSGroupList()
    assert get_vmss_group_for_node(nodes, groups, "test-node") is None
    assert get_vmss_group_for_node(nodes, groups, "missing") is None
    assert groups.groups == {}


def test_group_for_node_uses_existing_index_without_lookup():
    groups = VMSSGroupList()
    groups.add_node("sub/rg/a", "gone")
    assert get_vmss_group_for_node(NodeCache(), groups, "gone") is groups.get("sub/rg/a")