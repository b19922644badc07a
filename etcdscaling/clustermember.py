"""Adds etcd learner members for new control plane nodes and promotes them."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from etcdscaling.bootstrap import TARGET_NAMESPACE
from etcdscaling.cluster import (
    LEARNER_NOT_READY_MESSAGE,
    InMemoryCluster,
    InMemoryEtcdClient,
    preferred_internal_ip,
)
from etcdscaling.machines import (
    MACHINE_DELETION_HOOK_NAME,
    MACHINE_DELETION_HOOK_OWNER,
    current_member_machines_with_deletion_hooks,
    find_machine_by_node_internal_ip,
    has_machine_deletion_hook,
    index_machines_by_node_internal_ip,
    member_to_node_internal_ip,
    voting_member_ip_set,
)
from etcdscaling.models import LabelSelector, Member, Node, NotFoundError

log = logging.getLogger(__name__)

CLUSTER_NETWORK_NAME = "cluster"
ETCD_PEER_PORT = "2380"


class MachineAPIChecker(Protocol):
    def is_functional(self) -> bool: ...


class ReconcileError(Exception):
    """One or more failures collected while reconciling etcd membership.

    ``peer_url`` carries a peer URL that was still found eligible for
    addition despite the failures.
    """

    def __init__(self, errors: Sequence[str], peer_url: str = "") -> None:
        self.errors = list(errors)
        self.peer_url = peer_url
        if len(self.errors) == 1:
            message = self.errors[0]
        else:
            message = "[" + ", ".join(self.errors) + "]"
        super().__init__(message)


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def is_url_mapped_to_member(peer_url: str, members: Iterable[Member]) -> bool:
    """Return True if ``peer_url`` is the first peer URL of any member."""
    return any(m.peer_urls and m.peer_urls[0] == peer_url for m in members)


@dataclass
class ClusterMemberController:
    """Scales etcd up one learner at a time and promotes eligible learners."""

    etcd_client: InMemoryEtcdClient
    cluster: InMemoryCluster
    machine_api_checker: MachineAPIChecker
    machine_selector: LabelSelector
    node_selector: LabelSelector

    def reconcile_members(self) -> None:
        """Add the next eligible learner and promote ready learners.

        Does nothing while any member is unhealthy; raises ReconcileError
        carrying every failure otherwise encountered.
        """
        unhealthy = self.etcd_client.unhealthy_members()
        if unhealthy:
            log.debug("unhealthy members: %r", unhealthy)
            return

        errors: list[str] = []
        peer_url = ""
        try:
            peer_url = self.etcd_peer_url_to_add()
        except ReconcileError as exc:
            peer_url = exc.peer_url
            errors.append(f"could not get etcd peerURL to add :{exc}")
        except Exception as exc:  # noqa: BLE001 - every failure is reported
            errors.append(f"could not get etcd peerURL to add :{exc}")

        if peer_url:
            try:
                self.etcd_client.member_add_as_learner(peer_url)
            except Exception as exc:  # noqa: BLE001
                errors.append(f"failed to add learner member :{exc}")

        try:
            self.ensure_learner_promotion()
        except Exception as exc:  # noqa: BLE001
            errors.append(f"failed to promote learner: {exc}")

        if errors:
            raise ReconcileError(errors)

    def etcd_peer_url_to_add(self) -> str:
        """Return the peer URL of the next node to add as a learner, or ""."""
        nodes = self.cluster.list_nodes(self.node_selector)
        try:
            candidates = self.nodes_without_voting_members(nodes)
        except (LookupError, ValueError) as exc:
            raise ReconcileError([f"failed to map nodes to voting members: {exc}"]) from exc
        if not candidates:
            return ""

        members = self.etcd_client.member_list()
        errors: list[str] = []
        for node in candidates:
            if node.deletion_timestamp is not None:
                log.info("Ignoring node (%s) for new member addition as it's pending deletion", node.name)
                continue

            try:
                peer_url = self.peer_url_for_node(node)
            except Exception as exc:  # noqa: BLE001
                errors.append(f"failed to get peerURL for node: {exc}")
                continue

            if is_url_mapped_to_member(peer_url, members):
                continue

            try:
                functional = self.machine_api_checker.is_functional()
            except Exception as exc:  # noqa: BLE001
                errors.append(f"failed to determine Machine API availability: {exc}")
                continue

            if not functional:
                # Without a machine API, nodes are scaled up without any
                # vertical-scaling considerations.
                try:
                    running_not_ready = self.is_etcd_container_running_not_ready(node)
                except Exception as exc:  # noqa: BLE001
                    errors.append(f"failed to check if pod is running and not ready: {exc}")
                    continue
                if not running_not_ready:
                    continue
                return peer_url

            try:
                internal_ip = self.internal_ip_for_node(node)
            except Exception as exc:  # noqa: BLE001
                errors.append(f"failed to get internal IP for node: {exc}")
                continue

            try:
                machine = find_machine_by_node_internal_ip(
                    internal_ip, self.machine_selector, self.cluster
                )
            except Exception as exc:  # noqa: BLE001
                raise ReconcileError(
                    [f"failed to get machine for node ({node.name}): {exc}"]
                ) from exc
            if machine is None:
                log.info(
                    "Ignoring node (%s) for scale-up: no Machine found referencing "
                    "this node's internal IP (%s)",
                    node.name,
                    internal_ip,
                )
                continue
            if machine.deletion_timestamp is not None:
                log.info(
                    "Ignoring node (%s) for scale-up since its machine (%s) is pending deletion",
                    node.name,
                    machine.name,
                )
                continue
            if not has_machine_deletion_hook(machine):
                log.info(
                    "Ignoring node (%s) for scale-up since its machine (%s) is missing the "
                    "PreDrain deletion hook (name: %s, owner: %s)",
                    node.name,
                    machine.name,
                    MACHINE_DELETION_HOOK_NAME,
                    MACHINE_DELETION_HOOK_OWNER,
                )
                continue

            # Checking the pod first ensures no two unstarted members join in parallel.
            try:
                running_not_ready = self.is_etcd_container_running_not_ready(node)
            except Exception as exc:  # noqa: BLE001
                errors.append(f"failed to check if pod is running and not ready: {exc}")
                continue
            if not running_not_ready:
                continue

            if errors:
                raise ReconcileError(errors, peer_url=peer_url)
            return peer_url

        if errors:
            raise ReconcileError(errors)
        return ""

    def ensure_learner_promotion(self) -> None:
        """Promote every learner member whose machine allows it."""
        nodes = self.cluster.list_nodes(self.node_selector)
        try:
            candidates = self.nodes_without_voting_members(nodes)
        except (LookupError, ValueError) as exc:
            raise ReconcileError([f"failed to map nodes to voting members: {exc}"]) from exc
        if not candidates:
            return

        errors: list[str] = []
        for member in self.etcd_client.member_list():
            try:
                promote = self.should_promote(member)
            except Exception as exc:  # noqa: BLE001
                errors.append(f"failed to decide on promotion for member ({member.name}): {exc}")
                continue
            if not promote:
                continue

            peer = member.peer_urls[0] if member.peer_urls else ""
            try:
                self.etcd_client.member_promote(member)
            except Exception as exc:  # noqa: BLE001
                if str(exc) == LEARNER_NOT_READY_MESSAGE:
                    log.info(
                        "Not ready for promotion: etcd learner member (%s) is not yet "
                        "in sync with leader's log",
                        peer,
                    )
                    continue
                errors.append(f"failed to promote learner member ({peer}): {exc}")

        if errors:
            raise ReconcileError(errors)

    def should_promote(self, member: Member) -> bool:
        """Return True if ``member`` is a learner whose machine permits promotion."""
        if not member.is_learner:
            return False

        if not self.machine_api_checker.is_functional():
            return True

        node_ip = member_to_node_internal_ip(member)
        machines = current_member_machines_with_deletion_hooks(self.machine_selector, self.cluster)
        machine = index_machines_by_node_internal_ip(machines).get(node_ip)
        if machine is None:
            log.info(
                "Ignoring member (%s) for promotion: no Machine found referencing this member's IP (%s)",
                member.name,
                node_ip,
            )
            return False
        if machine.deletion_timestamp is not None:
            log.info(
                "Ignoring member (%s) for promotion since its machine (%s) is pending deletion",
                member.name,
                machine.name,
            )
            return False
        return True

    def is_etcd_container_running_not_ready(self, node: Node) -> bool:
        """Return True if the node's etcd container is running but not yet ready."""
        pod_name = f"etcd-{node.name}"
        try:
            pod = self.cluster.get_pod(TARGET_NAMESPACE, pod_name)
        except NotFoundError:
            return False

        etcd = next((c for c in pod.container_statuses if c.name == "etcd"), None)
        running = etcd is not None and etcd.running
        ready = etcd is not None and etcd.ready
        if not running or ready:
            log.info(
                "Skipping %s as the etcd container is in incorrect state, "
                "isEtcdContainerRunning = %s, isEtcdContainerReady = %s",
                pod_name,
                running,
                ready,
            )
            return False
        return True

    def nodes_without_voting_members(self, nodes: Iterable[Node]) -> list[Node]:
        """Return the nodes whose internal IP belongs to no voting member."""
        try:
            voting_ips = voting_member_ip_set(self.etcd_client)
        except ValueError as exc:
            raise ValueError(f"failed to get the set of voting members: {exc}") from exc
        return [node for node in nodes if self.internal_ip_for_node(node) not in voting_ips]

    def peer_url_for_node(self, node: Node) -> str:
        """Build the etcd peer URL from the node's internal IP."""
        return f"https://{_join_host_port(self.internal_ip_for_node(node), ETCD_PEER_PORT)}"

    def internal_ip_for_node(self, node: Node) -> str:
        """Return the node's unbracketed internal IP in the cluster's IP family."""
        try:
            network = self.cluster.get_network(CLUSTER_NETWORK_NAME)
        except NotFoundError as exc:
            raise LookupError(f"failed to list cluster network: {exc}") from exc
        try:
            return preferred_internal_ip(network, node)
        except ValueError as exc:
            raise ValueError(
                f"failed to get escaped preferred internal IP for node: {exc}"
            ) from exc