import pytest

from etcdscaling.models import (
    LabelSelector,
    Machine,
    Member,
    NotFoundError,
)

MASTER_ROLE = "machine.openshift.io/cluster-api-machine-role"


def test_equality_selector():
    sel = LabelSelector.parse(f"{MASTER_ROLE}=master")
    assert sel.matches({MASTER_ROLE: "master"})
    assert not sel.matches({MASTER_ROLE: "worker"})
    assert not sel.matches({})


def test_double_equals_selector():
    sel = LabelSelector.parse("app==etcd")
    assert sel.matches({"app": "etcd"})
    assert not sel.matches({"app": "guard"})


def test_existence_selector():
    sel = LabelSelector.parse("node-role.kubernetes.io/master")
    assert sel.matches({"node-role.kubernetes.io/master": ""})
    assert not sel.matches({"other": ""})


def test_not_equals_selector():
    sel = LabelSelector.parse("app!=etcd")
    assert sel.matches({})
    assert sel.matches({"app": "guard"})
    assert not sel.matches({"app": "etcd"})


def test_not_exists_selector():
    sel = LabelSelector.parse("!excluded")
    assert sel.matches({"app": "etcd"})
    assert not sel.matches({"excluded": "yes"})


def test_combined_requirements_all_must_hold():
    sel = LabelSelector.parse("app=etcd, tier")
    assert sel.matches({"app": "etcd", "tier": "x"})
    assert not sel.matches({"app": "etcd"})
    assert not sel.matches({"tier": "x"})


def test_empty_selector_matches_everything():
    sel = LabelSelector.parse("  ")
    assert sel.matches({})
    assert sel.matches({"a": "b"})
    assert sel.requirements == ()


@pytest.mark.parametrize("text", ["=value", "a=b,", "!", "bad key=x", "a=b c"])
def test_invalid_selector_raises(text):
    with pytest.raises(ValueError):
        LabelSelector.parse(text)


def test_not_found_error_carries_kind_and_name():
    err = NotFoundError("configmaps", "kube-system/bootstrap")
    assert isinstance(err, LookupError)
    assert err.kind == "configmaps"
    assert err.name == "kube-system/bootstrap"
    assert "not found" in str(err)


def test_member_defaults_are_independent():
    first = Member()
    second = Member()
    first.peer_urls.append("https://10.0.0.1:2380")
    assert second.peer_urls == []
    assert first.is_learner is False


def test_machine_defaults():
    machine = Machine(name="m-0")
    assert machine.phase is None
    assert machine.pre_drain_hooks == []
    assert machine.deletion_timestamp is None