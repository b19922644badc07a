"""Data types describing the cluster objects inspected by the scaling logic."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

NODE_INTERNAL_IP = "InternalIP"
NODE_EXTERNAL_IP = "ExternalIP"

_KEY_RE = re.compile(
    r"^([A-Za-z0-9]([A-Za-z0-9.\-]*[A-Za-z0-9])?/)?[A-Za-z0-9]([A-Za-z0-9._\-]*[A-Za-z0-9])?$"
)
_VALUE_RE = re.compile(r"^([A-Za-z0-9]([A-Za-z0-9._\-]*[A-Za-z0-9])?)?$")


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" not found')
        self.kind = kind
        self.name = name


class _Op(Enum):
    EQUALS = "="
    NOT_EQUALS = "!="
    EXISTS = "exists"
    NOT_EXISTS = "!exists"


@dataclass(frozen=True)
class _Requirement:
    key: str
    op: _Op
    value: str = ""

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.op is _Op.EXISTS:
            return self.key in labels
        if self.op is _Op.NOT_EXISTS:
            return self.key not in labels
        if self.op is _Op.EQUALS:
            return self.key in labels and labels[self.key] == self.value
        return labels.get(self.key) != self.value


def _check_key(key: str, text: str) -> str:
    if not _KEY_RE.match(key):
        raise ValueError(f"invalid label key {key!r} in selector {text!r}")
    return key


def _check_value(value: str, text: str) -> str:
    if not _VALUE_RE.match(value):
        raise ValueError(f"invalid label value {value!r} in selector {text!r}")
    return value


@dataclass(frozen=True)
class LabelSelector:
    """A conjunction of equality and existence requirements on labels."""

    requirements: tuple[_Requirement, ...] = ()

    @classmethod
    def parse(cls, text: str) -> LabelSelector:
        """Parse a selector such as ``role=master,!excluded``."""
        stripped = text.strip()
        if not stripped:
            return cls(())
        requirements = []
        for part in (p.strip() for p in stripped.split(",")):
            if not part:
                raise ValueError(f"empty requirement in selector {text!r}")
            if part.startswith("!"):
                key = _check_key(part[1:].strip(), text)
                requirements.append(_Requirement(key, _Op.NOT_EXISTS))
            elif "!=" in part:
                key, _, value = part.partition("!=")
                requirements.append(
                    _Requirement(
                        _check_key(key.strip(), text),
                        _Op.NOT_EQUALS,
                        _check_value(value.strip(), text),
                    )
                )
            elif "=" in part:
                separator = "==" if "==" in part else "="
                key, _, value = part.partition(separator)
                requirements.append(
                    _Requirement(
                        _check_key(key.strip(), text),
                        _Op.EQUALS,
                        _check_value(value.strip(), text),
                    )
                )
            else:
                requirements.append(_Requirement(_check_key(part, text), _Op.EXISTS))
        return cls(tuple(requirements))

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Return True if every requirement holds for ``labels``."""
        return all(req.matches(labels) for req in self.requirements)


@dataclass
class Member:
    """An etcd cluster member."""

    id: int = 0
    name: str = ""
    peer_urls: list[str] = field(default_factory=list)
    client_urls: list[str] = field(default_factory=list)
    is_learner: bool = False


@dataclass
class MemberHealth:
    """Health information for one etcd member."""

    member: Member
    healthy: bool = True
    took: str = ""
    error: str | None = None


@dataclass
class LifecycleHook:
    """A machine lifecycle hook that blocks a deletion phase."""

    name: str
    owner: str


@dataclass
class Machine:
    """A machine managed by the machine API."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    phase: str | None = None
    addresses: list[tuple[str, str]] = field(default_factory=list)
    pre_drain_hooks: list[LifecycleHook] = field(default_factory=list)
    deletion_timestamp: datetime | None = None


@dataclass
class Node:
    """A cluster node."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    addresses: list[tuple[str, str]] = field(default_factory=list)
    deletion_timestamp: datetime | None = None


@dataclass
class ContainerStatus:
    """The observed state of one container in a pod."""

    name: str
    running: bool = False
    ready: bool = False


@dataclass
class Pod:
    """A pod and the status of its containers."""

    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    container_statuses: list[ContainerStatus] = field(default_factory=list)


@dataclass
class NodeStatus:
    """The static-pod revision state of one node."""

    node_name: str
    current_revision: int = 0


@dataclass
class StaticPodOperatorSpec:
    """Operator configuration as raw YAML or JSON documents."""

    observed_config: bytes | str | None = None
    unsupported_config_overrides: bytes | str | None = None


@dataclass
class StaticPodOperatorStatus:
    """Revision rollout state across nodes."""

    latest_available_revision: int = 0
    node_statuses: list[NodeStatus] = field(default_factory=list)


@dataclass
class ConfigMap:
    """A namespaced string-to-string map."""

    name: str
    namespace: str = ""
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Namespace:
    """A namespace and its annotations."""

    name: str
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class Infrastructure:
    """Cluster-wide infrastructure settings."""

    name: str
    control_plane_topology: str = ""


@dataclass
class Network:
    """Cluster-wide network settings."""

    name: str
    service_network: list[str] = field(default_factory=list)