"""Status updates, CSR checks and RBAC clean-up shared by the hub and the agent."""

from __future__ import annotations

import copy
import random
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit

import yaml

from .clientcert import (
    CERTIFICATE_APPROVED,
    CERTIFICATE_DENIED,
    CertificateSigningRequestStatus,
)

DEFAULT_RETRY_STEPS = 4
_BACKOFF_DURATION = 0.01
_BACKOFF_FACTOR = 5.0
_BACKOFF_JITTER = 0.1

_RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"
_HANDLED_KINDS: dict[tuple[str, str], str] = {
    ("v1", "Namespace"): "namespaces",
    (_RBAC_API_VERSION, "Role"): "roles",
    (_RBAC_API_VERSION, "RoleBinding"): "rolebindings",
    (_RBAC_API_VERSION, "ClusterRole"): "clusterroles",
    (_RBAC_API_VERSION, "ClusterRoleBinding"): "clusterrolebindings",
}
_CLUSTER_SCOPED = frozenset({"namespaces", "clusterroles", "clusterrolebindings"})

_TEMPLATE_FIELD = re.compile(r"\{\{-?\s*\.(\w+)\s*-?\}\}")


class NotFoundError(Exception):
    """Raised by a client when the requested object does not exist."""


class ConflictError(Exception):
    """Raised by a client when an update lost a race with another writer."""


class AggregateError(Exception):
    """Several errors reported together, one per line."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__(self._message())

    def _message(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        lines = "\n * ".join(str(err) for err in self.errors)
        return f"{len(self.errors)} errors occurred:\n * {lines}"


@dataclass
class Condition:
    """A status condition of a cluster resource."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None
    observed_generation: int = 0


@dataclass(frozen=True)
class Subject:
    """An entry of a role binding's subject list."""

    kind: str
    name: str
    api_group: str = ""
    namespace: str = ""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def find_status_condition(
    conditions: Iterable[Condition], condition_type: str
) -> Condition | None:
    """Return the condition of the given type, or None."""
    return next((c for c in conditions if c.type == condition_type), None)


def set_status_condition(conditions: list[Condition], condition: Condition) -> None:
    """Add or update ``condition`` in place, keeping the transition time if the status is unchanged."""
    existing = find_status_condition(conditions, condition.type)
    if existing is None:
        conditions.append(
            replace(
                condition,
                last_transition_time=condition.last_transition_time or _now(),
            )
        )
        return
    if existing.status != condition.status:
        existing.status = condition.status
        existing.last_transition_time = condition.last_transition_time or _now()
    existing.reason = condition.reason
    existing.message = condition.message
    existing.observed_generation = condition.observed_generation


def retry_on_conflict(fn: Callable[[], Any], steps: int = DEFAULT_RETRY_STEPS) -> Any:
    """Call ``fn`` until it stops raising ConflictError, at most ``steps`` times.

    Waits with exponential backoff between attempts; the last conflict is re-raised.
    """
    if steps < 1:
        raise ValueError("steps must be at least 1")
    delay = _BACKOFF_DURATION
    for attempt in range(steps):
        try:
            return fn()
        except ConflictError:
            if attempt == steps - 1:
                raise
        time.sleep(delay * (1 + random.random() * _BACKOFF_JITTER))
        delay *= _BACKOFF_FACTOR
    raise AssertionError("unreachable")


def _update_status(
    get: Callable[[], Any],
    update_status: Callable[[Any], Any],
    update_funcs: tuple[Callable[[Any], None], ...],
) -> tuple[Any, bool]:
    def attempt() -> tuple[Any, bool]:
        obj = get()
        old_status = obj.status
        new_status = copy.deepcopy(old_status)
        for update in update_funcs:
            update(new_status)
        if new_status == old_status:
            return new_status, False
        changed = copy.copy(obj)
        changed.status = new_status
        updated = update_status(changed)
        return updated.status, True

    return retry_on_conflict(attempt)


def update_managed_cluster_status(client: Any, cluster_name: str, *args: Callable[[Any], None]) -> tuple[Any, bool]:
    """Apply the update functions to a managed cluster's status and write it if it changed.

    ``client`` provides ``get(name)`` and ``update_status(cluster)``. Returns the
    resulting status and whether an update was written.
    """
    return _update_status(
        lambda: client.get(cluster_name), client.update_status, args
    )


def update_managed_cluster_condition_fn(condition: Condition) -> Callable[[Any], None]:
    """Return an update function that sets ``condition`` on a status."""

    def update(status: Any) -> None:
        set_status_condition(status.conditions, condition)

    return update


def update_managed_cluster_addon_status(
    client: Any, addon_namespace: str, addon_name: str, *args: Callable[[Any], None]
) -> tuple[Any, bool]:
    """Apply the update functions to an add-on's status and write it if it changed.

    ``client`` provides ``get(namespace, name)`` and ``update_status(addon)``.
    """
    return _update_status(
        lambda: client.get(addon_namespace, addon_name), client.update_status, args
    )


def update_managed_cluster_addon_status_fn(condition: Condition) -> Callable[[Any], None]:
    """Return an update function that sets ``condition`` on an add-on status."""
    return update_managed_cluster_condition_fn(condition)


def is_csr_in_terminal_state(status: CertificateSigningRequestStatus) -> bool:
    """Return True if the CSR has been approved or denied."""
    return any(
        c.type in (CERTIFICATE_APPROVED, CERTIFICATE_DENIED) for c in status.conditions
    )


def is_valid_https_url(server_url: str) -> bool:
    """Return True if ``server_url`` parses as a URL with the https scheme."""
    if not server_url:
        return False
    try:
        parsed = urlsplit(server_url)
    except ValueError:
        return False
    return parsed.scheme == "https"


def _format_for_cli(api_version: str, kind: str, namespace: str, name: str) -> str:
    group = api_version.rpartition("/")[0]
    resource = kind.lower() + (f".{group}" if group else "")
    text = f"{resource}/{name}"
    if namespace:
        text += f" -n {namespace}"
    return text


def _decode(raw: bytes) -> dict:
    try:
        obj = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"unable to decode object: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError("unable to decode object: not a mapping")
    if not obj.get("kind"):
        raise ValueError("Object 'Kind' is missing in object")
    if not obj.get("apiVersion"):
        raise ValueError("Object 'apiVersion' is missing in object")
    return obj


def clean_up_managed_cluster_manifests(
    client: Any, recorder: Any, asset_func: Callable[[str], bytes], *args: str
) -> None:
    """Delete the objects described by the named manifest files.

    Objects already gone are skipped. Every other failure is collected and
    raised together as an AggregateError once all files were tried.
    """
    errors: list[Exception] = []
    for file_name in args:
        try:
            obj = _decode(asset_func(file_name))
        except Exception as exc:  # noqa: BLE001 - collected and reported together
            errors.append(exc)
            continue
        api_version, kind = obj["apiVersion"], obj["kind"]
        metadata = obj.get("metadata") or {}
        name = metadata.get("name", "")
        resource = _HANDLED_KINDS.get((api_version, kind))
        if resource is None:
            version = api_version.rpartition("/")[2]
            errors.append(TypeError(f"unhandled type *{version}.{kind}"))
            continue
        namespace = "" if resource in _CLUSTER_SCOPED else metadata.get("namespace") or ""
        try:
            client.delete(resource, name, namespace)
        except NotFoundError:
            continue
        except Exception as exc:  # noqa: BLE001 - collected and reported together
            errors.append(exc)
            continue
        recorder.event(
            f"ManagedCluster{kind}Deleted",
            f"Deleted {_format_for_cli(api_version, kind, namespace, name)}",
        )
    if errors:
        raise AggregateError(errors)


def _clean_up_group(
    client: Any,
    recorder: Any,
    managed_cluster_group: str,
    resource: str,
    kind: str,
    describe: Callable[[Any], str],
) -> None:
    for binding in client.list(resource):
        subjects = list(binding.subjects)
        remaining = [
            s
            for s in subjects
            if not (s.kind == "Group" and s.name == managed_cluster_group)
        ]
        if not remaining:
            client.delete(resource, binding.name, binding.namespace)
            recorder.event(f"{kind}Deleted", f"Deleted {kind} {describe(binding)}")
        elif len(remaining) != len(subjects):
            changed = copy.copy(binding)
            changed.subjects = remaining
            client.update(resource, changed)
            recorder.event(f"{kind}Updated", f"Updated {kind} {describe(binding)}")


def clean_up_group_from_cluster_role_bindings(
    client: Any, recorder: Any, managed_cluster_group: str
) -> None:
    """Drop the group from every cluster role binding, deleting bindings left with no subject."""
    _clean_up_group(
        client,
        recorder,
        managed_cluster_group,
        "clusterrolebindings",
        "ClusterRoleBinding",
        lambda b: f'"{b.name}"',
    )


def clean_up_group_from_role_bindings(
    client: Any, recorder: Any, managed_cluster_group: str
) -> None:
    """Drop the group from every role binding in all namespaces, deleting empty ones."""
    _clean_up_group(
        client,
        recorder,
        managed_cluster_group,
        "rolebindings",
        "RoleBinding",
        lambda b: f'"{b.namespace}"/"{b.name}"',
    )


def managed_cluster_asset_fn(
    read_file: Callable[[str], bytes], managed_cluster_name: str
) -> Callable[[str], bytes]:
    """Return an asset function that fills ``{{ .ManagedClusterName }}`` in manifest templates."""
    fields = {"ManagedClusterName": managed_cluster_name}

    def render(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in fields:
            raise ValueError(f"can't evaluate field {key}")
        return fields[key]

    def asset(name: str) -> bytes:
        template = read_file(name)
        text = template.decode("utf-8") if isinstance(template, bytes) else template
        return _TEMPLATE_FIELD.sub(render, text).encode("utf-8")

    return asset