"""In-memory views of cluster objects and etcd membership, plus topology helpers."""

from __future__ import annotations

import copy
import ipaddress
from collections.abc import Iterable

from etcdscaling.models import (
    NODE_INTERNAL_IP,
    ConfigMap,
    Infrastructure,
    LabelSelector,
    Machine,
    Member,
    MemberHealth,
    Namespace,
    Network,
    Node,
    NotFoundError,
    Pod,
)

INFRASTRUCTURE_CLUSTER_NAME = "cluster"
TOPOLOGY_SINGLE_REPLICA = "SingleReplica"
TOPOLOGY_HIGHLY_AVAILABLE = "HighlyAvailable"
LEARNER_NOT_READY_MESSAGE = (
    "etcdserver: can only promote a learner member which is in sync with leader"
)

_KINDS = {
    ConfigMap: "configmaps",
    Namespace: "namespaces",
    Infrastructure: "infrastructures",
    Network: "networks",
    Pod: "pods",
    Machine: "machines",
    Node: "nodes",
}


class InMemoryCluster:
    """A store of cluster objects addressable by kind, namespace and name."""

    def __init__(self, objects: Iterable[object] = ()) -> None:
        self._objects: dict[tuple[type, str, str], object] = {}
        for obj in objects:
            self.add(obj)

    def add(self, obj: object) -> None:
        """Store ``obj``, replacing any object of the same kind and name."""
        kind = type(obj)
        if kind not in _KINDS:
            raise TypeError(f"unsupported object type {kind.__name__}")
        key = (kind, getattr(obj, "namespace", ""), obj.name)  # type: ignore[attr-defined]
        self._objects[key] = obj

    def _get(self, kind: type, namespace: str, name: str):
        try:
            return self._objects[(kind, namespace, name)]
        except KeyError:
            label = f"{namespace}/{name}" if namespace else name
            raise NotFoundError(_KINDS[kind], label) from None

    def _list(self, kind: type, selector: LabelSelector | None):
        return [
            obj
            for (obj_kind, _, _), obj in self._objects.items()
            if obj_kind is kind and (selector is None or selector.matches(obj.labels))
        ]

    def get_config_map(self, namespace: str, name: str) -> ConfigMap:
        return self._get(ConfigMap, namespace, name)

    def get_namespace(self, name: str) -> Namespace:
        return self._get(Namespace, "", name)

    def get_infrastructure(self, name: str) -> Infrastructure:
        return self._get(Infrastructure, "", name)

    def get_network(self, name: str) -> Network:
        return self._get(Network, "", name)

    def get_pod(self, namespace: str, name: str) -> Pod:
        return self._get(Pod, namespace, name)

    def list_machines(self, selector: LabelSelector | None) -> list[Machine]:
        return self._list(Machine, selector)

    def list_nodes(self, selector: LabelSelector | None) -> list[Node]:
        return self._list(Node, selector)


class InMemoryEtcdClient:
    """An etcd membership held in memory."""

    def __init__(
        self,
        members: Iterable[Member] = (),
        *,
        unhealthy: Iterable[int] = (),
        lagging_learners: Iterable[int] = (),
    ) -> None:
        self._members = [copy.deepcopy(m) for m in members]
        self._unhealthy = set(unhealthy)
        self._lagging = set(lagging_learners)

    def member_list(self) -> list[Member]:
        return [copy.deepcopy(m) for m in self._members]

    def voting_member_list(self) -> list[Member]:
        return [copy.deepcopy(m) for m in self._members if not m.is_learner]

    def member_health(self) -> list[MemberHealth]:
        return [
            MemberHealth(
                member=copy.deepcopy(m),
                healthy=m.id not in self._unhealthy,
                error=None if m.id not in self._unhealthy else "member is unhealthy",
            )
            for m in self._members
        ]

    def unhealthy_members(self) -> list[Member]:
        return [copy.deepcopy(m) for m in self._members if m.id in self._unhealthy]

    def member_add_as_learner(self, peer_url: str) -> Member:
        """Add an unstarted learner member listening on ``peer_url``."""
        if any(peer_url in m.peer_urls for m in self._members):
            raise ValueError("etcdserver: Peer URLs already exists")
        new_id = max((m.id for m in self._members), default=0) + 1
        member = Member(id=new_id, peer_urls=[peer_url], is_learner=True)
        self._members.append(member)
        return copy.deepcopy(member)

    def member_promote(self, member: Member) -> None:
        """Turn the learner with ``member``'s id into a voting member."""
        target = next((m for m in self._members if m.id == member.id), None)
        if target is None:
            raise NotFoundError("member", f"{member.id:x}")
        if not target.is_learner:
            raise ValueError("etcdserver: can only promote a learner member")
        if target.id in self._lagging:
            raise RuntimeError(LEARNER_NOT_READY_MESSAGE)
        target.is_learner = False


def get_control_plane_topology(cluster: InMemoryCluster) -> str:
    """Return the control plane topology of the cluster infrastructure."""
    infra = cluster.get_infrastructure(INFRASTRUCTURE_CLUSTER_NAME)
    if not infra.control_plane_topology:
        raise ValueError("ControlPlaneTopology was not set")
    return infra.control_plane_topology


def is_single_node_topology(cluster: InMemoryCluster) -> bool:
    return get_control_plane_topology(cluster) == TOPOLOGY_SINGLE_REPLICA


def preferred_internal_ip(network: Network, node: Node) -> str:
    """Return the node's internal IP in the family of the service network."""
    if not network.service_network:
        raise ValueError(f"network {network.name} has no service network")
    family = ipaddress.ip_network(network.service_network[0], strict=False).version
    for kind, address in node.addresses:
        if kind != NODE_INTERNAL_IP:
            continue
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            continue
        if ip.version == family:
            return address
    raise ValueError(
        f"no matching IPv{family} internal address found for node {node.name}"
    )