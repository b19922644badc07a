from datetime import datetime, timezone

import pytest

from etcdscaling.cluster import InMemoryCluster, InMemoryEtcdClient
from etcdscaling.clustermember import (
    ClusterMemberController,
    ReconcileError,
    is_url_mapped_to_member,
)
from etcdscaling.machines import MACHINE_DELETION_HOOK_NAME, MACHINE_DELETION_HOOK_OWNER
from etcdscaling.models import (
    NODE_INTERNAL_IP,
    ContainerStatus,
    LabelSelector,
    LifecycleHook,
    Machine,
    Member,
    Network,
    Node,
    Pod,
)

MACHINE_SELECTOR = LabelSelector.parse("machine.openshift.io/cluster-api-machine-role=master")
NODE_SELECTOR = LabelSelector.parse("node-role.kubernetes.io/master")


class FakeMachineAPI:
    def __init__(self, functional=True, error=None):
        self.functional = functional
        self.error = error

    def is_functional(self):
        if self.error is not None:
            raise self.error
        return self.functional


def machine_for(name, ip, has_hook, deleted):
    return Machine(
        name=name,
        labels={"machine.openshift.io/cluster-api-machine-role": "master"},
        phase="Running",
        addresses=[(NODE_INTERNAL_IP, ip)],
        pre_drain_hooks=(
            [LifecycleHook(MACHINE_DELETION_HOOK_NAME, MACHINE_DELETION_HOOK_OWNER)]
            if has_hook
            else []
        ),
        deletion_timestamp=datetime(2023, 1, 1, tzinfo=timezone.utc) if deleted else None,
    )


def node_for(name, ip, deleted=False):
    return Node(
        name=name,
        labels={"node-role.kubernetes.io/master": ""},
        addresses=[(NODE_INTERNAL_IP, ip)],
        deletion_timestamp=datetime(2023, 1, 1, tzinfo=timezone.utc) if deleted else None,
    )


def member_for(member_id, name, learner=False):
    return Member(
        id=member_id,
        name=name,
        peer_urls=[f"https://10.0.0.{member_id}:2380"],
        is_learner=learner,
    )


def pod_for(node_name, running, ready):
    return Pod(
        name=f"etcd-{node_name}",
        namespace="openshift-etcd",
        labels={"app": "etcd"},
        container_statuses=[ContainerStatus("etcd", running=running, ready=ready)],
    )


def make_controller(
    members,
    objects,
    functional=True,
    service_network="172.30.0.0/16",
    checker=None,
    **client_kwargs,
):
    cluster = InMemoryCluster(
        [Network("cluster", service_network=[service_network]), *objects]
    )
    client = InMemoryEtcdClient(members, **client_kwargs)
    controller = ClusterMemberController(
        etcd_client=client,
        cluster=cluster,
        machine_api_checker=checker or FakeMachineAPI(functional),
        machine_selector=MACHINE_SELECTOR,
        node_selector=NODE_SELECTOR,
    )
    return controller, client


def voting_count(client):
    return sum(1 for m in client.member_list() if not m.is_learner)


@pytest.mark.parametrize(
    "members, objects, functional, expected",
    [
        (
            [member_for(0, "m-0")],
            [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
             pod_for("m-0", True, True)],
            True,
            "",
        ),
        (
            [],
            [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
             pod_for("m-0", True, False)],
            True,
            "https://10.0.0.0:2380",
        ),
        (
            [],
            [node_for("m-0", "10.0.0.0"), pod_for("m-0", True, False)],
            False,
            "https://10.0.0.0:2380",
        ),
        (
            [],
            [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
             pod_for("m-0", False, False)],
            True,
            "",
        ),
        (
            [],
            [machine_for("m-0", "10.0.0.0", False, False), node_for("m-0", "10.0.0.0"),
             pod_for("m-0", True, False)],
            True,
            "",
        ),
        (
            [],
            [machine_for("m-0", "10.0.0.0", False, True), node_for("m-0", "10.0.0.0"),
             pod_for("m-0", True, False)],
            True,
            "",
        ),
    ],
    ids=[
        "no new node/no member added",
        "node and machine with running pod/peer url returned",
        "non-functional machine api/peer url returned",
        "etcd container not running/no peer url",
        "machine without deletion hook/no peer url",
        "machine pending deletion/no peer url",
    ],
)
def test_etcd_peer_url_to_add(members, objects, functional, expected):
    controller, _ = make_controller(members, objects, functional)
    assert controller.etcd_peer_url_to_add() == expected


def test_peer_url_ignores_node_pending_deletion():
    controller, _ = make_controller(
        [],
        [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0", deleted=True),
         pod_for("m-0", True, False)],
    )
    assert controller.etcd_peer_url_to_add() == ""


def test_peer_url_machine_api_error_is_reported():
    controller, _ = make_controller(
        [],
        [node_for("m-0", "10.0.0.0"), pod_for("m-0", True, False)],
        checker=FakeMachineAPI(error=RuntimeError("boom")),
    )
    with pytest.raises(ReconcileError) as info:
        controller.etcd_peer_url_to_add()
    assert str(info.value) == "failed to determine Machine API availability: boom"
    assert info.value.peer_url == ""


@pytest.mark.parametrize(
    "objects, functional, expected_voting",
    [
        (
            [machine_for("m-0", "10.0.0.0", True, False), machine_for("m-1", "10.0.0.1", True, False)],
            True,
            2,
        ),
        ([], False, 2),
        (
            [machine_for("m-0", "10.0.0.0", True, False), machine_for("m-1", "10.0.0.1", False, False)],
            True,
            1,
        ),
        (
            [machine_for("m-0", "10.0.0.0", True, False), machine_for("m-1", "10.0.0.1", True, True)],
            True,
            1,
        ),
    ],
    ids=[
        "learner with deletion hook/promoted",
        "non-functional machine api/promoted",
        "learner without deletion hook/not promoted",
        "learner machine pending deletion/not promoted",
    ],
)
def test_ensure_learner_promotion(objects, functional, expected_voting):
    members = [member_for(0, "m-0"), member_for(1, "m-1", learner=True)]
    nodes_and_pods = [
        node_for("m-0", "10.0.0.0"),
        node_for("m-1", "10.0.0.1"),
        pod_for("m-0", True, True),
        pod_for("m-1", True, True),
    ]
    controller, client = make_controller(members, [*objects, *nodes_and_pods], functional)
    controller.ensure_learner_promotion()
    assert voting_count(client) == expected_voting


def test_ensure_learner_promotion_without_learners_keeps_membership():
    controller, client = make_controller(
        [member_for(0, "m-0")],
        [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
         pod_for("m-0", True, True)],
    )
    controller.ensure_learner_promotion()
    assert len(client.member_list()) == 1


def test_lagging_learner_is_not_an_error():
    controller, client = make_controller(
        [member_for(0, "m-0"), member_for(1, "m-1", learner=True)],
        [machine_for("m-1", "10.0.0.1", True, False), node_for("m-0", "10.0.0.0"),
         node_for("m-1", "10.0.0.1")],
        lagging_learners=[1],
    )
    controller.ensure_learner_promotion()
    assert voting_count(client) == 1


def test_reconcile_adds_member():
    controller, client = make_controller(
        [],
        [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
         pod_for("m-0", True, False)],
    )
    controller.reconcile_members()
    members = client.member_list()
    assert len(members) == 1
    assert members[0].peer_urls == ["https://10.0.0.0:2380"]


def test_reconcile_adds_ipv6_member():
    ip = "fd2e:6f44:5dd8:c956::16"
    controller, client = make_controller(
        [],
        [machine_for("m-0", ip, True, False), node_for("m-0", ip), pod_for("m-0", True, False)],
        service_network="fd02::/112",
    )
    controller.reconcile_members()
    members = client.member_list()
    assert len(members) == 1
    assert members[0].peer_urls == ["https://[fd2e:6f44:5dd8:c956::16]:2380"]


def test_reconcile_skips_machine_pending_deletion():
    controller, client = make_controller(
        [],
        [machine_for("m-0", "10.0.0.0", True, True), node_for("m-0", "10.0.0.0"),
         pod_for("m-0", True, False)],
    )
    controller.reconcile_members()
    assert client.member_list() == []


def test_reconcile_adds_member_when_machine_api_off():
    controller, client = make_controller(
        [],
        [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
         pod_for("m-0", True, False)],
        functional=False,
    )
    controller.reconcile_members()
    # The new learner is added and, with the machine API off, promoted.
    members = client.member_list()
    assert len(members) == 1
    assert members[0].is_learner is False


def test_reconcile_skips_node_without_machine():
    controller, client = make_controller(
        [],
        [node_for("m-0", "10.0.0.0"), pod_for("m-0", True, False)],
    )
    controller.reconcile_members()
    assert client.member_list() == []


def test_reconcile_does_nothing_with_unhealthy_members():
    controller, client = make_controller(
        [member_for(5, "m-5")],
        [machine_for("m-0", "10.0.0.0", True, False), node_for("m-0", "10.0.0.0"),
         pod_for("m-0", True, False)],
        unhealthy=[5],
    )
    controller.reconcile_members()
    assert [m.id for m in client.member_list()] == [5]


def test_reconcile_collects_errors():
    controller, client = make_controller(
        [],
        [node_for("m-0", "10.0.0.0"), pod_for("m-0", True, False)],
        checker=FakeMachineAPI(error=RuntimeError("boom")),
    )
    with pytest.raises(ReconcileError) as info:
        controller.reconcile_members()
    assert info.value.errors == [
        "could not get etcd peerURL to add :failed to determine Machine API availability: boom"
    ]
    assert client.member_list() == []


def test_is_etcd_container_running_not_ready():
    controller, _ = make_controller(
        [],
        [node_for("m-0", "10.0.0.0"), node_for("m-1", "10.0.0.1"), pod_for("m-0", True, False),
         pod_for("m-1", True, True)],
    )
    assert controller.is_etcd_container_running_not_ready(node_for("m-0", "10.0.0.0")) is True
    assert controller.is_etcd_container_running_not_ready(node_for("m-1", "10.0.0.1")) is False
    assert controller.is_etcd_container_running_not_ready(node_for("m-2", "10.0.0.2")) is False


def test_nodes_without_voting_members():
    n0 = node_for("m-0", "10.0.0.0")
    n1 = node_for("m-1", "10.0.0.1")
    controller, _ = make_controller(
        [member_for(0, "m-0"), member_for(1, "m-1", learner=True)], [n0, n1]
    )
    assert [n.name for n in controller.nodes_without_voting_members([n0, n1])] == ["m-1"]


def test_internal_ip_requires_network():
    controller = ClusterMemberController(
        etcd_client=InMemoryEtcdClient(),
        cluster=InMemoryCluster(),
        machine_api_checker=FakeMachineAPI(),
        machine_selector=MACHINE_SELECTOR,
        node_selector=NODE_SELECTOR,
    )
    with pytest.raises(LookupError, match="failed to list cluster network"):
        controller.internal_ip_for_node(node_for("m-0", "10.0.0.0"))


def test_peer_url_for_node():
    controller, _ = make_controller([], [])
    assert controller.peer_url_for_node(node_for("m-0", "10.0.0.7")) == "https://10.0.0.7:2380"


def test_is_url_mapped_to_member():
    members = [member_for(0, "m-0"), member_for(1, "m-1")]
    assert is_url_mapped_to_member("https://10.0.0.1:2380", members) is True
    assert is_url_mapped_to_member("https://10.0.0.9:2380", members) is False
    assert is_url_mapped_to_member("https://10.0.0.1:2380", []) is False