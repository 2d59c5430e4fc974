import types

import pytest
from kubernetes import config
from kubernetes.client.exceptions import ApiException

from infraboot.errors import InfrabootError
from infraboot.kube import client


def _deployment(generation, observed, updated, available, replicas=1):
    return types.SimpleNamespace(
        metadata=types.SimpleNamespace(generation=generation),
        spec=types.SimpleNamespace(replicas=replicas),
        status=types.SimpleNamespace(
            observed_generation=observed, updated_replicas=updated, available_replicas=available,
        ),
    )


class FakeApps:
    def __init__(self, states):
        self.states = list(states)
        self.reads = 0

    def read_namespaced_deployment(self, name, namespace):
        self.reads += 1
        return self.states.pop(0) if len(self.states) > 1 else self.states[0]


def test_waits_for_restarted_rollout(monkeypatch, fake_time):
    api = FakeApps([_deployment(2, 1, 0, 1), _deployment(2, 2, 1, 0), _deployment(2, 2, 1, 1)])
    monkeypatch.setattr(client, "_apps_api", lambda ctx, cfg: api)
    monkeypatch.setattr("time.time", fake_time.monotonic)

    client.wait_for_deployment_available("source-controller", "flux-system", interval=2)
    assert api.reads == 3


def test_times_out(monkeypatch, fake_time):
    api = FakeApps([_deployment(2, 1, 0, 0)])
    monkeypatch.setattr(client, "_apps_api", lambda ctx, cfg: api)
    monkeypatch.setattr("time.time", fake_time.monotonic)

    with pytest.raises(TimeoutError, match="deployment/source-controller"):
        client.wait_for_deployment_available("source-controller", "flux-system", timeout_seconds=10)


class ForbiddenApps:
    def read_namespaced_deployment(self, name, namespace):
        raise ApiException(status=403, reason="Forbidden")


def test_api_errors_become_infraboot_errors(monkeypatch, fake_time):
    monkeypatch.setattr(client, "_apps_api", lambda ctx, cfg: ForbiddenApps())
    monkeypatch.setattr("time.time", fake_time.monotonic)

    with pytest.raises(InfrabootError, match="403 Forbidden") as err:
        client.wait_for_deployment_available("source-controller", "flux-system")
    assert isinstance(err.value.__cause__, ApiException)


def test_missing_kubeconfig_becomes_infraboot_error(monkeypatch, tmp_path):
    def load_kube_config(config_file=None, context=None):
        raise config.ConfigException(f"Invalid kube-config file. No configuration found: {config_file}")

    monkeypatch.setattr(client.config, "load_kube_config", load_kube_config)

    with pytest.raises(InfrabootError, match="cannot load kubeconfig"):
        client.wait_for_deployment_available("source-controller", "flux-system", kubeconfig=tmp_path / "missing")
