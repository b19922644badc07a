"""Bootstrap scaling strategies and the checks that decide whether etcd may scale."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from etcdscaling.cluster import InMemoryCluster, InMemoryEtcdClient, is_single_node_topology
from etcdscaling.models import (
    MemberHealth,
    NotFoundError,
    StaticPodOperatorSpec,
    StaticPodOperatorStatus,
)
from etcdscaling.overrides import is_unsupported_unsafe_etcd

log = logging.getLogger(__name__)

TARGET_NAMESPACE = "openshift-etcd"
DELAYED_HA_BOOTSTRAP_ANNOTATION = "openshift.io/delayed-ha-bootstrap"
BOOTSTRAP_CONFIG_MAP_NAMESPACE = "kube-system"
BOOTSTRAP_CONFIG_MAP_NAME = "bootstrap"
BOOTSTRAP_MEMBER_NAME = "etcd-bootstrap"


class ScalingStrategy(str, Enum):
    """The invariants enforced when scaling the etcd cluster."""

    HA = "HAScalingStrategy"
    DELAYED_HA = "DelayedHAScalingStrategy"
    BOOTSTRAP_IN_PLACE = "BootstrapInPlaceStrategy"
    UNSAFE = "UnsafeScalingStrategy"


class UnsafeToScaleError(Exception):
    """Raised when cluster conditions make scaling etcd unsafe."""


def get_bootstrap_scaling_strategy(
    spec: StaticPodOperatorSpec, cluster: InMemoryCluster
) -> ScalingStrategy:
    """Determine the scaling strategy from overrides, annotations and topology."""
    try:
        unsafe = is_unsupported_unsafe_etcd(spec)
    except ValueError as exc:
        raise ValueError(
            "couldn't determine etcd unsupported override status, "
            f"assuming default HA scaling strategy: {exc}"
        ) from exc

    namespace = cluster.get_namespace(TARGET_NAMESPACE)
    delayed_ha = DELAYED_HA_BOOTSTRAP_ANNOTATION in namespace.annotations

    try:
        single_node = is_single_node_topology(cluster)
    except ValueError as exc:
        raise ValueError(f"failed to get control plane topology: {exc}") from exc

    if unsafe or single_node:
        return ScalingStrategy.UNSAFE
    if delayed_ha:
        return ScalingStrategy.DELAYED_HA
    return ScalingStrategy.HA


def is_bootstrap_complete(
    cluster: InMemoryCluster,
    status: StaticPodOperatorStatus,
    etcd_client: InMemoryEtcdClient,
) -> bool:
    """Return True once bootstrap finished, revisions settled and the bootstrap member is gone."""
    try:
        config_map = cluster.get_config_map(
            BOOTSTRAP_CONFIG_MAP_NAMESPACE, BOOTSTRAP_CONFIG_MAP_NAME
        )
    except NotFoundError:
        log.debug(
            "bootstrap considered incomplete because the kube-system/bootstrap configmap wasn't found"
        )
        return False

    bootstrap_status = config_map.data.get("status", "")
    if bootstrap_status != "complete":
        log.debug("bootstrap considered incomplete because status is %r", bootstrap_status)
        return False

    if status.latest_available_revision == 0:
        return False
    if any(
        node.current_revision != status.latest_available_revision
        for node in status.node_statuses
    ):
        log.debug(
            "bootstrap considered incomplete because revision %d is still in progress",
            status.latest_available_revision,
        )
        return False

    if any(m.name == BOOTSTRAP_MEMBER_NAME for m in etcd_client.member_list()):
        log.debug("(etcd-bootstrap) member is still present in the etcd cluster membership")
        return False

    return True


def check_quorum_fault_tolerant(health: Sequence[MemberHealth]) -> None:
    """Raise UnsafeToScaleError unless the cluster survives losing one member."""
    total = len(health)
    if total <= 0:
        raise UnsafeToScaleError(f"invalid etcd member length: {total}")
    quorum = total // 2 + 1
    healthy = sum(1 for h in health if h.healthy)
    if total - quorum < 1:
        raise UnsafeToScaleError(
            f"etcd cluster has quorum of {quorum} which is not fault tolerant: {list(health)}"
        )
    if healthy - quorum < 1:
        raise UnsafeToScaleError(
            f"etcd cluster has quorum of {quorum} and {healthy} healthy members "
            f"which is not fault tolerant: {list(health)}"
        )


def check_safe_to_scale_cluster(
    cluster: InMemoryCluster,
    spec: StaticPodOperatorSpec,
    status: StaticPodOperatorStatus,
    etcd_client: InMemoryEtcdClient,
) -> None:
    """Raise UnsafeToScaleError if the scaling strategy's invariants do not hold."""
    try:
        complete = is_bootstrap_complete(cluster, status, etcd_client)
    except (LookupError, ValueError) as exc:
        raise UnsafeToScaleError(
            f"CheckSafeToScaleCluster failed to determine bootstrap status: {exc}"
        ) from exc

    # While bootstrapping, scaling is always considered safe.
    if not complete:
        return

    try:
        strategy = get_bootstrap_scaling_strategy(spec, cluster)
    except (LookupError, ValueError) as exc:
        raise UnsafeToScaleError(
            f"CheckSafeToScaleCluster failed to get bootstrap scaling strategy: {exc}"
        ) from exc

    if strategy is ScalingStrategy.UNSAFE:
        return

    if strategy in (ScalingStrategy.HA, ScalingStrategy.DELAYED_HA):
        minimum_nodes = 3
    else:
        raise UnsafeToScaleError(
            f"CheckSafeToScaleCluster unrecognized scaling strategy {strategy.value!r}"
        )

    node_count = len(status.node_statuses)
    if node_count < minimum_nodes:
        raise UnsafeToScaleError(
            f"CheckSafeToScaleCluster {minimum_nodes} nodes are required, "
            f"but only {node_count} are available"
        )

    check_quorum_fault_tolerant(etcd_client.member_health())

    log.debug(
        "node count %d satisfies minimum of %d required by the %s bootstrap scaling strategy",
        node_count,
        minimum_nodes,
        strategy.value,
    )


class AlwaysSafeQuorumChecker:
    """A quorum checker that always allows a revision update."""

    def is_safe_to_update_revision(self) -> bool:
        return True


@dataclass
class QuorumCheck:
    """Decides whether etcd can tolerate losing a member during a revision rollout."""

    cluster: InMemoryCluster
    spec: StaticPodOperatorSpec
    status: StaticPodOperatorStatus
    etcd_client: InMemoryEtcdClient

    def is_safe_to_update_revision(self) -> bool:
        """Return True when safe; raise UnsafeToScaleError otherwise."""
        check_safe_to_scale_cluster(self.cluster, self.spec, self.status, self.etcd_client)
        return True