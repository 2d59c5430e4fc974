import types

import pytest
import yaml
from kubernetes.client.exceptions import ApiException

from infraboot.config.models import FluxSettings, GitSettings
from infraboot.errors import CommandError, ConfigError, HandoffError
from infraboot.flux import Flux, FluxHandoff, normalize_version
from infraboot.kube import client as kube_client
from infraboot.kube.kubectl import Kubectl
from infraboot.observers.events import HandoffCompleted, HandoffRolledBack
from infraboot.utils.shell import CommandRunner
from conftest import cp


def _flux(version="2.3.0", context=None):
    runner = CommandRunner()
    return Flux(runner, Kubectl(runner, context=context), FluxSettings(version=version), GitSettings(org="acme"))


def test_normalize_version():
    assert normalize_version("2.3.0") == "v2.3.0"
    assert normalize_version("v2.3.0") == "v2.3.0"
    with pytest.raises(ConfigError):
        normalize_version(None)


def test_install_and_sync(spy):
    f = _flux(context="k3s-default")
    f.install()
    f.create_source()
    f.create_kustomization("homelab")

    assert spy.calls[0] == ["flux", "--context", "k3s-default", "install", "--version=v2.3.0"]
    assert spy.calls[1] == ["flux", "--context", "k3s-default", "check"]
    source = spy.calls[2]
    assert source[3:7] == ["create", "source", "git", "flux-system"]
    assert "--url=https://github.com/acme/deployments" in source
    assert "--secret-ref=flux-git-auth" in source
    assert "--path=clusters/homelab" in spy.calls[3]


def test_git_auth_secret(spy):
    _flux().create_git_auth_secret("ghp_token")
    create = spy.find("kubectl", "create", "secret", "generic", "flux-git-auth")[0]
    assert "--namespace=flux-system" in create
    assert "--from-literal=password=ghp_token" in create


def test_wait_ready_fails_on_timeout(spy):
    spy.on(["kubectl", "wait", "--for=condition=Ready", "kustomization/flux-system"], cp(1, "", "timed out"))
    with pytest.raises(CommandError):
        _flux().wait_ready()


LIVE_GITREPOSITORY = """\
apiVersion: source.toolkit.fluxcd.io/v1
kind: GitRepository
metadata:
  name: flux-system
  namespace: flux-system
  resourceVersion: "4711"
  uid: 0b6c1f2e-5d8a-4c4e-9a51-7f3e2d1c0b9a
  generation: 3
spec:
  interval: 1m
  secretRef:
    name: flux-git-auth
status:
  observedGeneration: 3
"""


def _synced_cluster(spy, password_b64="Z2hwX3N5bmNlZA=="):  # ghp_synced
    spy.on(["kubectl", "get", "externalsecret", "flux-git-auth"], cp(0, "True"))
    spy.on(["kubectl", "get", "secret", "flux-system", "-n", "flux-system", "-o"], cp(0, password_b64))
    spy.on(["kubectl", "get", "gitrepository", "flux-system"], cp(0, LIVE_GITREPOSITORY))


def _handoff(tmp_path, bus, run_ctx, restarts):
    return FluxHandoff(
        _flux(), work_dir=tmp_path, bus=bus, run_ctx=run_ctx,
        wait_available=lambda name, ns, **kw: restarts.append((name, ns)),
    )


def test_handoff_success(spy, tmp_path, bus, capture, run_ctx, fake_time):
    _synced_cluster(spy)
    restarts = []

    _handoff(tmp_path, bus, run_ctx, restarts).run()

    patch = spy.find("kubectl", "patch", "gitrepository", "flux-system")[0]
    assert '-p={"spec": {"secretRef": {"name": "flux-system"}}}' in patch
    assert restarts == [("source-controller", "flux-system")]
    assert spy.called("flux", "reconcile", "source", "git", "flux-system", "--timeout=30s")
    assert len(list(tmp_path.glob("gitrepository-flux-system.backup.*.yaml"))) == 1
    assert capture.of(HandoffCompleted)


def test_handoff_refuses_invalid_token(spy, tmp_path, bus, run_ctx, fake_time):
    _synced_cluster(spy, password_b64="bm90LWEtdG9rZW4=")  # not-a-token
    with pytest.raises(HandoffError, match="nothing changed"):
        _handoff(tmp_path, bus, run_ctx, []).run()
    assert not spy.find("kubectl", "patch")
    assert list(tmp_path.iterdir()) == []


def test_handoff_times_out_waiting_for_sync(spy, tmp_path, bus, run_ctx, fake_time):
    spy.on(["kubectl", "get", "secret", "flux-system"], cp(1, "", "NotFound"))
    with pytest.raises(TimeoutError):
        _handoff(tmp_path, bus, run_ctx, []).run()
    assert not spy.find("kubectl", "patch")


def test_handoff_rolls_back_when_reconcile_fails(spy, tmp_path, bus, capture, run_ctx, fake_time):
    _synced_cluster(spy)
    spy.on(["flux", "reconcile", "source", "git", "flux-system", "--timeout=30s"], cp(1, "", "auth failed"))
    restarts = []

    with pytest.raises(HandoffError, match="rolled back to flux-git-auth"):
        _handoff(tmp_path, bus, run_ctx, restarts).run()

    patches = spy.find("kubectl", "patch", "gitrepository", "flux-system")
    assert patches[0][-1] == '-p={"spec": {"secretRef": {"name": "flux-system"}}}'
    assert patches[1][-1] == '-p={"spec": {"secretRef": {"name": "flux-git-auth"}}}'
    assert not spy.find("kubectl", "apply")
    assert len(restarts) == 2
    assert capture.of(HandoffRolledBack)
    assert not capture.of(HandoffCompleted)


def test_backup_drops_server_managed_fields(spy, tmp_path, bus, run_ctx):
    _synced_cluster(spy)

    path, previous = _handoff(tmp_path, bus, run_ctx, []).backup()

    saved = yaml.safe_load(path.read_text())
    assert previous == "flux-git-auth"
    assert saved["metadata"] == {"name": "flux-system", "namespace": "flux-system"}
    assert "status" not in saved
    assert saved["spec"]["secretRef"] == {"name": "flux-git-auth"}


def test_failed_rollback_still_raises_handoff_error(spy, tmp_path, bus, capture, run_ctx, fake_time):
    _synced_cluster(spy)
    spy.on(["flux", "reconcile", "source", "git", "flux-system", "--timeout=30s"], cp(1, "", "auth failed"))
    spy.on(
        ["kubectl", "patch", "gitrepository", "flux-system", "-n", "flux-system", "--type=merge",
         '-p={"spec": {"secretRef": {"name": "flux-git-auth"}}}'],
        cp(1, "", "Operation cannot be fulfilled: the object has been modified"),
    )

    with pytest.raises(HandoffError, match="rollback failed too") as err:
        _handoff(tmp_path, bus, run_ctx, []).run()

    assert isinstance(err.value.__cause__, CommandError)
    assert "Backup: " in str(err.value)
    assert not capture.of(HandoffRolledBack)
    assert not capture.of(HandoffCompleted)


class FlakyApps:
    """Refuses the first deployment read, then reports a finished rollout."""

    def __init__(self):
        self.reads = 0

    def read_namespaced_deployment(self, name, namespace):
        self.reads += 1
        if self.reads == 1:
            raise ApiException(status=403, reason="Forbidden")
        return types.SimpleNamespace(
            metadata=types.SimpleNamespace(generation=1),
            spec=types.SimpleNamespace(replicas=1),
            status=types.SimpleNamespace(observed_generation=1, updated_replicas=1, available_replicas=1),
        )


def test_handoff_rolls_back_when_kubernetes_api_refuses(spy, monkeypatch, tmp_path, bus, capture, run_ctx, fake_time):
    _synced_cluster(spy)
    apps = FlakyApps()
    monkeypatch.setattr(kube_client, "_apps_api", lambda ctx, cfg: apps)
    monkeypatch.setattr("time.time", fake_time.monotonic)

    with pytest.raises(HandoffError, match="403 Forbidden"):
        FluxHandoff(_flux(), work_dir=tmp_path, bus=bus, run_ctx=run_ctx).run()

    patches = spy.find("kubectl", "patch", "gitrepository", "flux-system")
    assert patches[-1][-1] == '-p={"spec": {"secretRef": {"name": "flux-git-auth"}}}'
    assert apps.reads == 2
    assert capture.of(HandoffRolledBack)
