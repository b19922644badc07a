"""Reading values out of the operator's observed and override configuration."""

from __future__ import annotations

import json
from typing import Any

import yaml

from etcdscaling.models import StaticPodOperatorSpec

UNSAFE_ETCD_KEY = "useUnsupportedUnsafeNonHANonProductionUnstableEtcd"
CONTROL_PLANE_REPLICAS_PATH = ("controlPlane", "replicas")

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _load_config(raw: bytes | str | None) -> dict[str, Any]:
    """Decode a YAML or JSON document into a mapping; empty documents give {}."""
    if raw is None:
        return {}
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"unable to decode config: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config must be a mapping, got {type(data).__name__}")
    return data


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"invalid boolean value {text!r}")


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def is_unsupported_unsafe_etcd(spec: StaticPodOperatorSpec) -> bool:
    """Return True if the unsafe non-HA etcd override is set to a true value."""
    if spec.unsupported_config_overrides is None:
        return False
    config = _load_config(spec.unsupported_config_overrides)
    if UNSAFE_ETCD_KEY not in config:
        return False
    value = config[UNSAFE_ETCD_KEY]
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _parse_bool(value)
    return False


def read_desired_control_plane_replicas_count(spec: StaticPodOperatorSpec) -> int:
    """Return the control plane replica count from the merged configuration.

    Overrides take precedence over the observed configuration; a missing
    value yields 0.
    """
    config = _merge(
        _load_config(spec.observed_config),
        _load_config(spec.unsupported_config_overrides),
    )
    current: Any = config
    *parents, leaf = CONTROL_PLANE_REPLICAS_PATH
    for key in parents:
        if key not in current:
            return 0
        current = current[key]
        if not isinstance(current, dict):
            raise ValueError(
                f"unable to extract {list(CONTROL_PLANE_REPLICAS_PATH)} from the existing config: "
                f"{key} is of type {type(current).__name__}, expected a mapping"
            )
    if leaf not in current:
        return 0
    value = current[leaf]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(
            f"unable to extract {list(CONTROL_PLANE_REPLICAS_PATH)} from the existing config: "
            f"value is of type {type(value).__name__}, expected a number"
        )
    return int(value)