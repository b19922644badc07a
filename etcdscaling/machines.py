"""Helpers relating etcd members, nodes and machines."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from urllib.parse import urlsplit

from etcdscaling.cluster import InMemoryCluster, InMemoryEtcdClient
from etcdscaling.models import NODE_INTERNAL_IP, LabelSelector, Machine, Member

MACHINE_DELETION_HOOK_NAME = "EtcdQuorumOperator"
MACHINE_DELETION_HOOK_OWNER = "clusteroperator/etcd"


def _split_host_port(hostport: str) -> tuple[str, str]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        return host, rest[1:]
    host, sep, port = hostport.rpartition(":")
    if not sep:
        raise ValueError(f"address {hostport}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {hostport}: too many colons in address")
    return host, port


def _member_url(member: Member) -> str:
    if not member.peer_urls:
        raise ValueError(
            "unable to extract member's URL address, it has an empty PeerURLs field, "
            f"member name: {member.name}, id: {member.id}"
        )
    return member.peer_urls[0]


def member_to_node_internal_ip(member: Member) -> str:
    """Return the host part of the member's first peer URL."""
    netloc = urlsplit(_member_url(member)).netloc
    host, _ = _split_host_port(netloc.rpartition("@")[2])
    return host


def has_machine_deletion_hook(machine: Machine) -> bool:
    return any(
        hook.name == MACHINE_DELETION_HOOK_NAME and hook.owner == MACHINE_DELETION_HOOK_OWNER
        for hook in machine.pre_drain_hooks
    )


def filter_machines_with_deletion_hook(machines: Iterable[Machine]) -> list[Machine]:
    return [m for m in machines if has_machine_deletion_hook(m)]


def filter_machines_without_deletion_hook(machines: Iterable[Machine]) -> list[Machine]:
    return [m for m in machines if not has_machine_deletion_hook(m)]


def filter_machines_pending_deletion(machines: Iterable[Machine]) -> list[Machine]:
    return [m for m in machines if m.deletion_timestamp is not None]


def index_machines_by_node_internal_ip(machines: Iterable[Machine]) -> dict[str, Machine]:
    """Map every internal IP of every machine to that machine."""
    return {
        address: machine
        for machine in machines
        for kind, address in machine.addresses
        if kind == NODE_INTERNAL_IP
    }


def current_member_machines_with_deletion_hooks(
    selector: LabelSelector, cluster: InMemoryCluster
) -> list[Machine]:
    return filter_machines_with_deletion_hook(cluster.list_machines(selector))


def find_machine_by_node_internal_ip(
    ip: str, selector: LabelSelector, cluster: InMemoryCluster
) -> Machine | None:
    """Return the first selected machine with ``ip`` as an internal IP, or None."""
    for machine in cluster.list_machines(selector):
        if (NODE_INTERNAL_IP, ip) in machine.addresses:
            return machine
    return None


def voting_member_ip_set(etcd_client: InMemoryEtcdClient) -> set[str]:
    """Return the IPs taken from the peer URLs of all voting members."""
    ips = set()
    for member in etcd_client.voting_member_list():
        host = urlsplit(_member_url(member)).hostname
        if not host:
            raise ValueError(f"unable to extract IP from {member.peer_urls[0]!r}")
        ips.add(host)
    return ips


class MachineAPI:
    """Decides whether the machine API manages the selected master machines."""

    def __init__(
        self,
        has_synced: Callable[[], bool],
        cluster: InMemoryCluster,
        selector: LabelSelector,
    ) -> None:
        self._has_synced = has_synced
        self._cluster = cluster
        self._selector = selector

    def is_functional(self) -> bool:
        """True once at least one selected machine is in the Running phase."""
        if not self._has_synced():
            return False
        return any(m.phase == "Running" for m in self._cluster.list_machines(self._selector))