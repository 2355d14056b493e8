# ocmregistration

Building blocks for registering managed clusters with a hub: checking client
certificates held in secrets, building kubeconfigs, managing feature gates,
updating status conditions on managed clusters and their add-ons, and cleaning
up RBAC objects left behind by a cluster.

## Installation

```
pip install .
```

To run the test suite as well:

```
pip install ".[test]"
pytest
```

## Client certificates: `ocmregistration.clientcert`

```python
from ocmregistration.clientcert import (
    Secret,
    RestConfig,
    is_certificate_valid,
    has_valid_hub_kubeconfig,
    get_cert_validity_period,
    build_kubeconfig,
)

valid = is_certificate_valid(pem_bytes, "my-agent")
ok = has_valid_hub_kubeconfig(secret, "my-agent")
not_before, not_after = get_cert_validity_period(secret)
kubeconfig = build_kubeconfig(RestConfig(host="https://hub.example.com:6443"),
                              "tls.crt", "tls.key")
```

- `Secret` holds `namespace`, `name`, `data` (a dict of bytes) and
  `resource_version`. The entries looked at are `kubeconfig`, `tls.key` and
  `tls.crt` (`KUBECONFIG_FILE`, `TLS_KEY_FILE`, `TLS_CERT_FILE`).
- `is_certificate_valid(cert_data, subject)` returns `False` if any
  certificate in the PEM chain has expired. When `subject` (a common name, or
  a `cryptography.x509.Name`) is given, at least one certificate must carry
  that common name. Data holding no parsable certificate raises
  `CertificateError`.
- `has_valid_hub_kubeconfig(secret, subject)` requires a kubeconfig, a key and
  a valid certificate in the secret. It returns `False` rather than raising.
- `get_cert_validity_period(secret)` returns the window shared by all
  certificates in the chain, as timezone-aware UTC datetimes: the latest
  `not_before` and the earliest `not_after`. It raises `CertificateError` when
  the secret has no certificate or the certificate cannot be parsed.
- `build_kubeconfig(client_config, cert_path, key_path)` returns a kubeconfig
  as a dict. It has the cluster `default-cluster`, the user `default-auth` and
  the context `default-context`. The context uses namespace `configuration`.
  The CA data is base64-encoded when present. Pass the dict to
  `yaml.safe_dump` to write it out.
- `is_csr_approved(csr)` takes a `CertificateSigningRequest` and reports
  whether its status has an `Approved` condition and no `Denied` one.

## Feature gates: `ocmregistration.features`

```python
from ocmregistration.features import new_default_feature_gate

gate = new_default_feature_gate()
gate.enabled("ClusterClaim")        # True by default (beta)
gate.enabled("AddonManagement")     # False by default (alpha)
gate.set("AddonManagement=true,ClusterClaim=false")
gate.set_from_map({"AllAlpha": True})
gate.known_features()
```

- A `FeatureGate` maps feature names to a `FeatureSpec`. Each spec has a
  default, a `PreRelease` stage and an optional lock to its default.
- Every gate also knows the two pseudo features `AllAlpha` and `AllBeta`.
  Setting one of them applies the value to every feature at that stage that
  has not been set explicitly.
- `add` refuses to re-register a feature with a different spec and raises
  `ValueError`.
- `set` and `set_from_map` raise `ValueError` in these cases: an unknown name,
  a value that is not a boolean word, or a change to a locked feature. When
  they raise, nothing is changed.
- `enabled` raises `KeyError` for a feature that is not registered.
- `known_features()` returns a sorted description of every feature that is
  neither GA nor deprecated, such as
  `AddonManagement=true|false (ALPHA - default=false)`.
- `str(gate)` lists the explicitly set values.
- `DEFAULT_MUTABLE_FEATURE_GATE` is a module-level gate built by
  `new_default_feature_gate()`.

## Status and clean-up helpers: `ocmregistration.helpers`

These functions take duck-typed client and recorder objects, so any client
that provides the calls below will work.

Conditions:

- `set_status_condition(conditions, condition)` adds or updates a `Condition`
  in place. When the status changes, the transition time is set to the new
  condition's time, or to now. When the status stays the same, the existing
  time is kept.
- `find_status_condition(conditions, condition_type)` returns the matching
  condition or `None`.

Status updates:

- `update_managed_cluster_status(client, cluster_name, *update_fns)` uses
  `client.get(name)` and `client.update_status(cluster)`.
  `update_managed_cluster_addon_status(client, namespace, name, *update_fns)`
  uses `client.get(namespace, name)` and `client.update_status(addon)`.
- Both apply the update functions to a copy of the object's `status`. They
  write the status only if it changed, and return `(status, updated)`.
- `update_managed_cluster_condition_fn(condition)` and
  `update_managed_cluster_addon_status_fn(condition)` build update functions
  that set a condition on `status.conditions`.
- `retry_on_conflict(fn, steps=4)` calls `fn` again, with exponential backoff,
  each time it raises `ConflictError`. When the attempts run out, it re-raises
  the last conflict. The status updates use it.

Checks:

- `is_csr_in_terminal_state(status)` reports whether a signing request has
  been approved or denied.
- `is_valid_https_url(server_url)` accepts only URLs with the `https` scheme.

Clean-up:

- `clean_up_managed_cluster_manifests(client, recorder, asset_func, *files)`
  decodes each manifest (YAML or JSON) returned by `asset_func(name)`.
  - It handles Namespace, Role, RoleBinding, ClusterRole and
    ClusterRoleBinding objects. For each, it calls
    `client.delete(resource, name, namespace)` and records
    `recorder.event(reason, message)`.
  - A `NotFoundError` counts as already deleted.
  - Other failures, including unhandled kinds, are collected and raised
    together as one `AggregateError`.
- `clean_up_group_from_cluster_role_bindings(client, recorder, group)` and
  `clean_up_group_from_role_bindings(client, recorder, group)` work through
  `client.list(resource)`.
  - For each binding, they remove `Group` subjects with the given name and
    write the change back with `client.update(resource, binding)`.
  - A binding left with no subjects is deleted instead.
  - Client errors are raised immediately.
- `managed_cluster_asset_fn(read_file, managed_cluster_name)` returns an asset
  function. It reads a template and fills in `{{ .ManagedClusterName }}`. Any
  other template field raises `ValueError`.

## What this package does not do

This package provides library functions only. It does not include:

- a command-line program;
- running controllers, an agent or an admission webhook server;
- a client that talks to a cluster API server.

Callers supply the client objects, recorders and manifest files.