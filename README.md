# etcdscaling

Decision logic for growing and guarding an etcd control-plane cluster:

- choose a **bootstrap scaling strategy** (HA, delayed HA or unsafe). The choice
  depends on operator overrides, an annotation on the `openshift-etcd` namespace
  and the control-plane topology.
- decide whether it is **safe to scale** the cluster or to roll out a new
  static-pod revision. It is safe when quorum can survive the loss of one member.
- **reconcile membership**. Find the next node whose etcd pod is running but not
  yet ready, add it as a learner, then promote the learners whose machines carry
  the required deletion hook.

Cluster objects and etcd membership are read through in-memory stand-ins
(`InMemoryCluster`, `InMemoryEtcdClient`). You can use and test the logic without
a live API server or etcd.

## Installation

```
pip install etcdscaling
```

The only runtime dependency is PyYAML.

## Modules

| Module | Contents |
| --- | --- |
| `etcdscaling.models` | Dataclasses for `Member`, `MemberHealth`, `Machine`, `LifecycleHook`, `Node`, `Pod`, `ContainerStatus`, `NodeStatus`, `StaticPodOperatorSpec`, `StaticPodOperatorStatus`, `ConfigMap`, `Namespace`, `Infrastructure` and `Network`. Also `LabelSelector` and `NotFoundError`. |
| `etcdscaling.cluster` | `InMemoryCluster`, `InMemoryEtcdClient`, `get_control_plane_topology`, `is_single_node_topology` and `preferred_internal_ip`. |
| `etcdscaling.overrides` | `is_unsupported_unsafe_etcd` and `read_desired_control_plane_replicas_count`. |
| `etcdscaling.machines` | Deletion-hook filters, IP indexing, `member_to_node_internal_ip`, `voting_member_ip_set` and `MachineAPI`. |
| `etcdscaling.bootstrap` | `ScalingStrategy`, `UnsafeToScaleError`, the bootstrap and quorum checks, `QuorumCheck` and `AlwaysSafeQuorumChecker`. |
| `etcdscaling.clustermember` | `ClusterMemberController`, `ReconcileError` and `is_url_mapped_to_member`. |

## Scaling safety

```python
from etcdscaling.models import (
    ConfigMap, Infrastructure, Member, Namespace, NodeStatus,
    StaticPodOperatorSpec, StaticPodOperatorStatus,
)
from etcdscaling.cluster import InMemoryCluster, InMemoryEtcdClient
from etcdscaling.bootstrap import (
    ScalingStrategy, UnsafeToScaleError,
    get_bootstrap_scaling_strategy, check_safe_to_scale_cluster,
)

cluster = InMemoryCluster([
    Namespace(name="openshift-etcd"),
    Infrastructure(name="cluster", control_plane_topology="HighlyAvailable"),
    ConfigMap(name="bootstrap", namespace="kube-system", data={"status": "complete"}),
])

spec = StaticPodOperatorSpec()
status = StaticPodOperatorStatus(
    latest_available_revision=1,
    node_statuses=[NodeStatus(node_name=f"node-{i}", current_revision=1) for i in range(3)],
)
etcd = InMemoryEtcdClient(
    Member(id=i, name=f"etcd-{i}", peer_urls=[f"https://10.0.0.{i + 1}:2380"])
    for i in range(3)
)

assert get_bootstrap_scaling_strategy(spec, cluster) is ScalingStrategy.HA

try:
    check_safe_to_scale_cluster(cluster, spec, status, etcd)
except UnsafeToScaleError as exc:
    print("not safe:", exc)
```

### How the strategy is chosen

`get_bootstrap_scaling_strategy` checks these conditions in order:

1. If the unsafe override is set, or the infrastructure topology is
   `SingleReplica`, the strategy is `ScalingStrategy.UNSAFE`.
2. If the `openshift-etcd` namespace carries the annotation
   `openshift.io/delayed-ha-bootstrap`, the strategy is `ScalingStrategy.DELAYED_HA`.
3. Otherwise the strategy is `ScalingStrategy.HA`.

### What `check_safe_to_scale_cluster` checks

- **Bootstrap incomplete.** Scaling is always allowed while bootstrap is
  incomplete. `is_bootstrap_complete` needs all of the following:
  - `kube-system/bootstrap` has `status: complete`;
  - a non-zero latest revision;
  - every node at that revision;
  - no `etcd-bootstrap` member.
- **Strategy checks.** Once bootstrap is complete, the unsafe strategy always
  passes. HA and delayed HA need at least 3 nodes and a fault-tolerant quorum.
- **Quorum check.** `check_quorum_fault_tolerant(health)` raises
  `UnsafeToScaleError` unless both of these hold: the cluster can lose one member
  and keep quorum, and enough members are healthy to do so.

### Quorum checkers

`QuorumCheck(cluster, spec, status, etcd_client).is_safe_to_update_revision()`
returns `True` when scaling is safe and raises `UnsafeToScaleError` otherwise.
`AlwaysSafeQuorumChecker().is_safe_to_update_revision()` always returns `True`.

## Membership reconciliation

```python
from etcdscaling.models import (
    ContainerStatus, LabelSelector, LifecycleHook, Machine, Network, Node, Pod,
)
from etcdscaling.cluster import InMemoryCluster, InMemoryEtcdClient
from etcdscaling.machines import MachineAPI
from etcdscaling.clustermember import ClusterMemberController, ReconcileError

machine_selector = LabelSelector.parse("machine.openshift.io/cluster-api-machine-role=master")
node_selector = LabelSelector.parse("node-role.kubernetes.io/master")

cluster = InMemoryCluster([
    Network(name="cluster", service_network=["172.30.0.0/16"]),
    Node(name="m-0", labels={"node-role.kubernetes.io/master": ""},
         addresses=[("InternalIP", "10.0.0.5")]),
    Machine(name="m-0", labels={"machine.openshift.io/cluster-api-machine-role": "master"},
            phase="Running", addresses=[("InternalIP", "10.0.0.5")],
            pre_drain_hooks=[LifecycleHook("EtcdQuorumOperator", "clusteroperator/etcd")]),
    Pod(name="etcd-m-0", namespace="openshift-etcd",
        container_statuses=[ContainerStatus(name="etcd", running=True, ready=False)]),
])
etcd = InMemoryEtcdClient()

controller = ClusterMemberController(
    etcd_client=etcd,
    cluster=cluster,
    machine_api_checker=MachineAPI(lambda: True, cluster, machine_selector),
    machine_selector=machine_selector,
    node_selector=node_selector,
)
try:
    controller.reconcile_members()
except ReconcileError as exc:
    print(exc.errors)

print(etcd.member_list())   # the new member for https://10.0.0.5:2380
```

### One pass of `reconcile_members()`

- It does nothing while any member is unhealthy.
- It adds at most one learner, chosen by `etcd_peer_url_to_add()`. A node
  qualifies when all of these hold:
  - its internal IP belongs to no voting member;
  - it is not pending deletion;
  - its peer URL is not already a member;
  - its etcd container is running but not ready.
- When the machine API is functional, the node also needs a matching machine.
  That machine must not be pending deletion and must carry the
  `EtcdQuorumOperator` / `clusteroperator/etcd` pre-drain hook.
- It then calls `ensure_learner_promotion()`. This promotes every learner for
  which `should_promote()` holds. When the machine API is not functional, every
  learner qualifies. A learner that is not yet in sync with the leader is skipped
  without an error.
- All failures are collected into a single `ReconcileError`, whose `errors`
  attribute lists them.

### The in-memory etcd client

`InMemoryEtcdClient` takes two optional arguments:

- `unhealthy=[ids]` marks members as unhealthy;
- `lagging_learners=[ids]` makes promotion of those learners fail as "not in sync
  with leader".

## Overrides

`is_unsupported_unsafe_etcd(spec)` reads the key
`useUnsupportedUnsafeNonHANonProductionUnstableEtcd` from
`spec.unsupported_config_overrides`, which may be YAML or JSON:

- a boolean is used as it is;
- a string such as `"true"` or `"false"` is parsed, and any other string raises
  `ValueError`;
- any other type counts as false.

`read_desired_control_plane_replicas_count(spec)` merges the observed config with
the overrides, the overrides taking precedence, and returns `controlPlane.replicas`.
It returns 0 when the value is absent.

## What this package does not do

- It does not connect to a Kubernetes API server or to a real etcd cluster.
  Every check reads the objects you place in `InMemoryCluster` and
  `InMemoryEtcdClient`.
- It does not run a controller loop, watch for changes, report operator
  conditions or record events. Each call is a single, synchronous decision or
  reconciliation pass.
- It provides no command-line program.
- Log messages go through the standard `logging` module.

## Running the tests

```
pip install -e ".[test]"
pytest
```