import json

import pytest

from infraboot.config.models import BootstrapConfig
from infraboot.errors import InfrabootError
from infraboot.kube.kubectl import Kubectl
from infraboot.observers.events import CheckResult
from infraboot.utils.shell import CommandRunner
from infraboot.verify import FAIL, PASS, WARN, CheckRunner, Verifier, pods_running, run_verification
from conftest import cp


def _json(obj):
    return cp(0, json.dumps(obj))


def _pod(name, phase):
    return {"metadata": {"name": name}, "status": {"phase": phase}}


def _ready(name, status="True"):
    return {"metadata": {"name": name}, "status": {"conditions": [{"type": "Ready", "status": status}]}}


def _verifier(bus=None, environ=None):
    return Verifier(Kubectl(CommandRunner()), BootstrapConfig(), CheckRunner(bus), environ=environ or {})


def test_check_runner_counts(bus, capture, run_ctx):
    checks = CheckRunner(bus, run_ctx)
    checks.check("one", lambda: True)
    checks.check("two", lambda: False)
    checks.check("three", lambda: False, optional=True)

    def boom():
        raise InfrabootError("cannot reach API")

    checks.check("four", boom)

    assert [s for _, s, _ in checks.results] == [PASS, FAIL, WARN, FAIL]
    assert checks.failures() == ["two", "four"]
    assert not checks.ok
    assert checks.success_rate == 25
    assert checks.summary() == "total=4 passed=1 failed=2 warnings=1 success=25%"
    assert [e.status for e in capture.of(CheckResult)] == [PASS, FAIL, WARN, FAIL]


def test_optional_failures_keep_run_ok():
    checks = CheckRunner()
    checks.check("extra", lambda: False, optional=True)
    assert checks.ok
    assert checks.warnings == 1


def test_pods_running_requires_at_least_one(spy):
    k = Kubectl(CommandRunner())
    spy.on(["kubectl", "get", "pods", "-n", "empty"], _json({"items": []}))
    spy.on(["kubectl", "get", "pods", "-n", "mixed"], _json({"items": [_pod("a", "Running"), _pod("b", "Pending")]}))
    spy.on(["kubectl", "get", "pods", "-n", "good"], _json({"items": [_pod("a", "Running")]}))

    assert not pods_running(k, "empty")
    assert not pods_running(k, "mixed")
    assert pods_running(k, "good")


def test_kubernetes_suite(spy):
    spy.on(["kubectl", "get", "nodes"], _json({"items": [_ready("node-1"), _ready("node-2", "False")]}))
    spy.on(["kubectl", "get", "pods", "-n", "kube-system"],
           _json({"items": [_pod("coredns", "Running"), _pod("helm-install", "Succeeded")]}))

    v = _verifier()
    v.kubernetes()

    assert v.checks.results == [
        ("Kubernetes API server", PASS, False),
        ("All nodes ready", FAIL, False),
        ("System pods running", PASS, False),
    ]
    assert spy.called("kubectl", "cluster-info", "--request-timeout=10s")


def test_vault_unsealed(spy):
    spy.on(["kubectl", "get", "pods", "-n", "vault", "-l"], cp(0, "vault-0"))
    spy.on(["kubectl", "exec", "vault-0"], _json({"initialized": True, "sealed": False}))
    assert _verifier()._vault_unsealed()

    spy.on(["kubectl", "exec", "vault-0"], _json({"initialized": True, "sealed": True}))
    assert not _verifier()._vault_unsealed()


def test_external_secrets_absent_is_only_a_warning(spy):
    spy.on(["kubectl", "get", "namespace", "external-secrets-system"], cp(1, err="NotFound"))
    v = _verifier()
    v.external_secrets()
    assert v.checks.results == [("External Secrets Operator installed", WARN, True)]
    assert v.checks.ok


def test_resources_counts_pending(spy):
    spy.on(["kubectl", "get", "pods", "-A", "--field-selector=status.phase=Pending"], cp(0, "ns pod 0/1 Pending\n"))
    v = _verifier()
    v.resources()
    assert [s for _, s, _ in v.checks.results] == [FAIL, PASS]


def test_zero_secrets(spy):
    spy.on(["kubectl", "get", "gitrepository", "flux-system"], cp(0, "flux-system"))
    v = _verifier(environ={"GITHUB_TOKEN": "ghp_x", "HOME": "/root"})
    v.zero_secrets()
    assert v.checks.results == [
        ("Flux uses External-Secrets-managed git auth", PASS, True),
        ("No credentials left in environment", WARN, True),
    ]


def test_run_verification_selected_suites(spy):
    checks = run_verification(_verifier(), ["storage"])
    names = [n for n, _, _ in checks.results]
    assert names == ["Storage class available", "Persistent volume claims bound"]


def test_run_verification_unknown_suite():
    with pytest.raises(InfrabootError, match="unknown verification suite"):
        run_verification(_verifier(), ["dns"])
