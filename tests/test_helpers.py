import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from ocmregistration.clientcert import CertificateSigningRequestStatus, CSRCondition
from ocmregistration.helpers import (
    AggregateError,
    Condition,
    ConflictError,
    NotFoundError,
    Subject,
    clean_up_group_from_cluster_role_bindings,
    clean_up_group_from_role_bindings,
    clean_up_managed_cluster_manifests,
    find_status_condition,
    is_csr_in_terminal_state,
    is_valid_https_url,
    managed_cluster_asset_fn,
    retry_on_conflict,
    set_status_condition,
    update_managed_cluster_addon_status,
    update_managed_cluster_addon_status_fn,
    update_managed_cluster_condition_fn,
    update_managed_cluster_status,
)

GROUP = "system:open-cluster-management:testgroup"

NOW = datetime.now(timezone.utc)
BEFORE = NOW - timedelta(seconds=10)
AFTER = NOW + timedelta(seconds=10)


def cond(name, status, reason, message, ts=None):
    return Condition(type=name, status=status, reason=reason, message=message, last_transition_time=ts)


@dataclass
class _Status:
    conditions: list = field(default_factory=list)


@dataclass
class _Resource:
    namespace: str
    name: str
    status: _Status


class _FakeClusterClient:
    def __init__(self, obj, conflicts=0):
        self.obj = obj
        self.conflicts = conflicts
        self.actions = []

    def get(self, *key):
        self.actions.append("get")
        return copy.deepcopy(self.obj)

    def update_status(self, obj):
        self.actions.append("update")
        if self.conflicts:
            self.conflicts -= 1
            raise ConflictError("conflict")
        self.obj = copy.deepcopy(obj)
        return copy.deepcopy(obj)


@dataclass
class _Binding:
    namespace: str
    name: str
    subjects: list


class _FakeKubeClient:
    def __init__(self, objects=()):
        self.store = {(r, ns, n): o for r, ns, n, o in objects}
        self.actions = []

    def delete(self, resource, name, namespace=""):
        self.actions.append(("delete", resource, namespace, name))
        if (resource, namespace, name) not in self.store:
            raise NotFoundError(f'{resource} "{name}" not found')
        del self.store[(resource, namespace, name)]

    def list(self, resource, namespace=""):
        self.actions.append(("list", resource, namespace, ""))
        return [copy.deepcopy(o) for (r, _, _), o in self.store.items() if r == resource]

    def update(self, resource, obj):
        self.actions.append(("update", resource, obj.namespace, obj.name, obj))
        self.store[(resource, obj.namespace, obj.name)] = obj
        return obj


class _Recorder:
    def __init__(self):
        self.events = []

    def event(self, reason, message):
        self.events.append((reason, message))


STATUS_CASES = [
    ("add to empty", [], cond("test", "True", "my-reason", "my-message"), True,
     [cond("test", "True", "my-reason", "my-message")]),
    ("add to non-conflicting", [cond("two", "True", "my-reason", "my-message")],
     cond("one", "True", "my-reason", "my-message"), True,
     [cond("two", "True", "my-reason", "my-message"), cond("one", "True", "my-reason", "my-message")]),
    ("change existing status",
     [cond("two", "True", "my-reason", "my-message"), cond("one", "True", "my-reason", "my-message")],
     cond("one", "False", "my-different-reason", "my-othermessage"), True,
     [cond("two", "True", "my-reason", "my-message"),
      cond("one", "False", "my-different-reason", "my-othermessage")]),
    ("leave existing transition time",
     [cond("two", "True", "my-reason", "my-message"), cond("one", "True", "my-reason", "my-message", BEFORE)],
     cond("one", "True", "my-reason", "my-message", AFTER), False,
     [cond("two", "True", "my-reason", "my-message"), cond("one", "True", "my-reason", "my-message", BEFORE)]),
]


def _check_conditions(actual, expected):
    for exp, act in zip(expected, actual, strict=False):
        if exp.last_transition_time is None:
            act = copy.replace(act, last_transition_time=None) if hasattr(copy, "replace") else Condition(
                act.type, act.status, act.reason, act.message, None, act.observed_generation)
        assert act == exp
    assert len(actual) >= len(expected)


@pytest.mark.parametrize("name,starting,new,expected_updated,expected", STATUS_CASES)
def test_update_managed_cluster_status(name, starting, new, expected_updated, expected):
    client = _FakeClusterClient(_Resource("", "testspokecluster", _Status(copy.deepcopy(starting))))
    status, updated = update_managed_cluster_status(
        client, "testspokecluster", update_managed_cluster_condition_fn(new)
    )
    assert updated == expected_updated
    _check_conditions(status.conditions, expected)


@pytest.mark.parametrize("name,starting,new,expected_updated,expected", STATUS_CASES)
def test_update_managed_cluster_addon_status(name, starting, new, expected_updated, expected):
    client = _FakeClusterClient(_Resource("test", "test", _Status(copy.deepcopy(starting))))
    status, updated = update_managed_cluster_addon_status(
        client, "test", "test", update_managed_cluster_addon_status_fn(new)
    )
    assert updated == expected_updated
    _check_conditions(status.conditions, expected)


def test_update_status_without_change_writes_nothing():
    client = _FakeClusterClient(_Resource("", "c", _Status([cond("a", "True", "r", "m", BEFORE)])))
    _, updated = update_managed_cluster_status(
        client, "c", update_managed_cluster_condition_fn(cond("a", "True", "r", "m"))
    )
    assert updated is False
    assert client.actions == ["get"]


def test_update_status_retries_on_conflict():
    client = _FakeClusterClient(_Resource("", "c", _Status([])), conflicts=1)
    status, updated = update_managed_cluster_status(
        client, "c", update_managed_cluster_condition_fn(cond("a", "True", "r", "m"))
    )
    assert updated is True
    assert client.actions == ["get", "update", "get", "update"]
    assert client.obj.status.conditions[0].type == "a"


def test_update_function_error_propagates():
    client = _FakeClusterClient(_Resource("", "c", _Status([])))

    def fail(status):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        update_managed_cluster_status(client, "c", fail)


def test_retry_on_conflict_gives_up():
    calls = []

    def always_conflict():
        calls.append(1)
        raise ConflictError("conflict")

    with pytest.raises(ConflictError):
        retry_on_conflict(always_conflict, 2)
    assert len(calls) == 2


def test_retry_on_conflict_returns_value():
    assert retry_on_conflict(lambda: 42, 1) == 42


def test_set_status_condition_sets_time_for_new():
    conditions = []
    set_status_condition(conditions, cond("x", "True", "r", "m"))
    assert conditions[0].last_transition_time is not None
    assert find_status_condition(conditions, "x").status == "True"
    assert find_status_condition(conditions, "y") is None


@pytest.mark.parametrize(
    "url,valid",
    [("", False), ("/path/path/path", False), ("http://127.0.0.1:8080", False), ("https://127.0.0.1:6443", True)],
)
def test_is_valid_https_url(url, valid):
    assert is_valid_https_url(url) is valid


@pytest.mark.parametrize(
    "conditions,terminal",
    [([], False), ([CSRCondition("Approved")], True), ([CSRCondition("Denied")], True),
     ([CSRCondition("Failed")], False)],
)
def test_is_csr_in_terminal_state(conditions, terminal):
    assert is_csr_in_terminal_state(CertificateSigningRequestStatus(conditions=conditions)) is terminal


def _obj(api_version, kind, namespace, name):
    return {"apiVersion": api_version, "kind": kind, "metadata": {"namespace": namespace, "name": name}}


RBAC = "rbac.authorization.k8s.io/v1"
APPLY_FILES = {
    "namespace": _obj("v1", "Namespace", "", "n1"),
    "clusterrole": _obj(RBAC, "ClusterRole", "", "cr1"),
    "clusterrolebinding": _obj(RBAC, "ClusterRoleBinding", "", "crb1"),
    "role": _obj(RBAC, "Role", "n1", "r1"),
    "rolebinding": _obj(RBAC, "RoleBinding", "n1", "rb1"),
}
OPAQUE_OBJECT = _obj("v1", "Secret", "n1", "s1")


def _asset_func(files):
    def read(name):
        if name not in files:
            raise FileNotFoundError("Failed to find file")
        return json.dumps(files[name]).encode()

    return read


def test_clean_up_deletes_applied_objects():
    client = _FakeKubeClient([
        ("namespaces", "", "n1", object()),
        ("clusterroles", "", "cr1", object()),
        ("clusterrolebindings", "", "crb1", object()),
        ("roles", "n1", "r1", object()),
        ("rolebindings", "n1", "rb1", object()),
    ])
    recorder = _Recorder()
    clean_up_managed_cluster_manifests(client, recorder, _asset_func(APPLY_FILES), *APPLY_FILES)
    assert [a[0] for a in client.actions] == ["delete"] * 5
    assert client.store == {}
    assert recorder.events[0] == ("ManagedClusterNamespaceDeleted", "Deleted namespace/n1")
    assert ("ManagedClusterRoleDeleted", "Deleted role.rbac.authorization.k8s.io/r1 -n n1") in recorder.events


def test_clean_up_with_no_applied_objects():
    client = _FakeKubeClient()
    recorder = _Recorder()
    clean_up_managed_cluster_manifests(client, recorder, _asset_func(APPLY_FILES), *APPLY_FILES)
    assert [a[0] for a in client.actions] == ["delete"] * 5
    assert recorder.events == []


def test_clean_up_unhandled_type():
    client = _FakeKubeClient()
    files = {"opaque": OPAQUE_OBJECT}
    with pytest.raises(AggregateError) as info:
        clean_up_managed_cluster_manifests(client, _Recorder(), _asset_func(files), *files)
    assert str(info.value) == "unhandled type *v1.Secret"
    assert client.actions == []


def test_clean_up_collects_all_errors():
    client = _FakeKubeClient()
    files = {"opaque": OPAQUE_OBJECT, "namespace": _obj("v1", "Namespace", "", "n1")}
    with pytest.raises(AggregateError) as info:
        clean_up_managed_cluster_manifests(client, _Recorder(), _asset_func(files), "missing", "opaque", "namespace")
    assert str(info.value) == "2 errors occurred:\n * Failed to find file\n * unhandled type *v1.Secret"
    assert [a[0] for a in client.actions] == ["delete"]


def test_clean_up_group_from_cluster_role_bindings():
    client = _FakeKubeClient([
        ("clusterrolebindings", "", "crb1", _Binding("", "crb1", [Subject("Group", GROUP)])),
        ("clusterrolebindings", "", "crb2", _Binding("", "crb2", [
            Subject("Group", GROUP), Subject("Group", "test"), Subject("User", GROUP)])),
        ("clusterrolebindings", "", "crb3", _Binding("", "crb3", [Subject("Group", "test")])),
    ])
    recorder = _Recorder()
    clean_up_group_from_cluster_role_bindings(client, recorder, GROUP)
    assert len(client.actions) == 3
    assert client.actions[1][0] == "delete" and client.actions[1][3] == "crb1"
    assert client.actions[2][0] == "update"
    assert client.actions[2][4].subjects == [Subject("Group", "test"), Subject("User", GROUP)]
    assert recorder.events == [
        ("ClusterRoleBindingDeleted", 'Deleted ClusterRoleBinding "crb1"'),
        ("ClusterRoleBindingUpdated", 'Updated ClusterRoleBinding "crb2"'),
    ]


def test_clean_up_group_from_role_bindings():
    client = _FakeKubeClient([
        ("rolebindings", "n1", "rb1", _Binding("n1", "rb1", [Subject("Group", GROUP)])),
        ("rolebindings", "n1", "rb2", _Binding("n1", "rb2", [
            Subject("Group", GROUP), Subject("Group", "test"), Subject("User", GROUP)])),
        ("rolebindings", "n2", "rb3", _Binding("n2", "rb3", [Subject("Group", "test")])),
    ])
    clean_up_group_from_role_bindings(client, _Recorder(), GROUP)
    assert len(client.actions) == 3
    assert client.actions[1][:4] == ("delete", "rolebindings", "n1", "rb1")
    assert client.actions[2][4].subjects == [Subject("Group", "test"), Subject("User", GROUP)]


def test_managed_cluster_asset_fn_renders_name():
    files = {"ns.yaml": b"kind: Namespace\nmetadata:\n  name: {{ .ManagedClusterName }}\n"}
    asset = managed_cluster_asset_fn(files.__getitem__, "cluster1")
    assert asset("ns.yaml") == b"kind: Namespace\nmetadata:\n  name: cluster1\n"


def test_managed_cluster_asset_fn_unknown_field():
    asset = managed_cluster_asset_fn(lambda name: b"{{ .Other }}", "cluster1")
    with pytest.raises(ValueError, match="Other"):
        asset("x")