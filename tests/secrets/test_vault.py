import json

import pytest

from infraboot import credentials as cred
from infraboot.config.models import VaultSettings
from infraboot.credentials import CredentialStore
from infraboot.errors import CommandError, CriticalWriteError
from infraboot.kube.kubectl import Kubectl
from infraboot.observers.events import SecretStored, SecretStoreFailed
from infraboot.phases.runner import CleanupStack
from infraboot.utils.shell import CommandRunner
from infraboot.vault import (
    BOOTSTRAP_INPUTS_PATH,
    FLUX_GIT_AUTH_PATH,
    MINIO_ROOT_PATH,
    MINIO_TF_USER_PATH,
    POSTGRES_SUPERUSER_PATH,
    POSTGRES_TF_USER_PATH,
    VaultClient,
)
from conftest import cp


SETTINGS = VaultSettings(critical_attempts=3, critical_delay=1, settle_seconds=0, ready_timeout=30, ready_interval=5)


def _vault(bus, run_ctx, cleanup=None):
    return VaultClient(Kubectl(CommandRunner()), SETTINGS, bus=bus, run_ctx=run_ctx, cleanup=cleanup)


def _kv_puts(spy):
    return [c for c in spy.calls if "vault kv put" in " ".join(c)]


def _ready_cluster(spy):
    spy.on(["kubectl", "get", "pods", "-n", "vault", "-l", SETTINGS.pod_selector], cp(0, "vault-0"))
    spy.on(["kubectl", "get", "pods", "-n", "vault", "-l", SETTINGS.configurer_selector], cp(0, "vault-configurer-1"))
    spy.on(["kubectl", "get", "pod", "vault-0"], cp(0, "True"))
    spy.on(["kubectl", "logs"], cp(0, "... successfully configured vault ..."))
    spy.on(["kubectl", "get", "secret", "vault-unseal-keys"], cp(0, "aHZzLnJvb3R0b2tlbg=="))  # hvs.roottoken


def test_is_ready_requires_configurator_marker(spy, bus, run_ctx):
    _ready_cluster(spy)
    assert _vault(bus, run_ctx).is_ready()

    spy.on(["kubectl", "logs"], cp(0, "still configuring"))
    assert not _vault(bus, run_ctx).is_ready()


def test_is_ready_false_when_sealed(spy, bus, run_ctx):
    _ready_cluster(spy)
    spy.on(["kubectl", "exec", "vault-0"], cp(2, "Sealed true"))
    assert not _vault(bus, run_ctx).is_ready()


def test_writer_pod_login_and_cleanup_registration(spy, bus, run_ctx, no_sleep):
    cleanup = CleanupStack()
    v = _vault(bus, run_ctx, cleanup)
    v.kv_put("secret/x", {"k": "v"})
    v.kv_put("secret/y", {"k": "v"})

    logins = [c for c in spy.calls if "auth/kubernetes/login" in " ".join(c)]
    assert len(logins) == 1
    assert "role=secret-writer" in logins[0][-1]
    assert len(cleanup) == 1

    put = _kv_puts(spy)[0]
    assert put[:7] == ["kubectl", "exec", "-i", "vault-writer-persistent", "-n", "vault-jobs", "--"]
    assert put[-1] == "secret/x"
    assert json.loads(spy.inputs[spy.calls.index(put)]) == {"k": "v"}

    cleanup.run()
    assert spy.find("kubectl", "delete", "pod", "vault-writer-persistent")


def test_writer_failure_removes_pod(spy, bus, run_ctx, no_sleep):
    spy.on(["kubectl", "wait"], cp(1, "", "timed out"))
    v = _vault(bus, run_ctx)
    with pytest.raises(CommandError):
        v.start_writer()
    # deleted before apply and again after the failure
    assert len(spy.find("kubectl", "delete", "pod", "vault-writer-persistent")) == 2


def test_store_critical_retries_then_succeeds(spy, bus, capture, run_ctx, no_sleep):
    attempts = {"n": 0}

    def flaky(argv, kw):
        if "vault kv put" in " ".join(argv):
            attempts["n"] += 1
            return cp(1 if attempts["n"] < 2 else 0, "", "503 Service Unavailable")
        return cp(0)

    spy.on(["kubectl", "exec"], flaky)
    _vault(bus, run_ctx).store_critical(MINIO_TF_USER_PATH, {"access_key": "tf-user", "secret_key": "s"})

    stored = capture.of(SecretStored)
    assert stored[0].path == MINIO_TF_USER_PATH
    assert stored[0].critical
    assert stored[0].attempts == 2


def test_store_critical_fails_hard(spy, bus, capture, run_ctx, no_sleep):
    spy.on(["kubectl", "exec", "-i"], cp(1, "", "permission denied"))
    with pytest.raises(CriticalWriteError, match="after 3 attempts"):
        _vault(bus, run_ctx).store_critical(POSTGRES_TF_USER_PATH, {"password": "p"})
    assert len(_kv_puts(spy)) == 3
    failed = capture.of(SecretStoreFailed)
    assert failed and failed[0].critical


def test_best_effort_does_not_raise(spy, bus, capture, run_ctx, no_sleep):
    spy.on(["kubectl", "exec", "-i"], cp(1, "", "nope"))
    assert not _vault(bus, run_ctx).store_best_effort(MINIO_ROOT_PATH, {"root_user": "u"})
    assert not capture.of(SecretStoreFailed)[0].critical


def test_store_minio_credentials_requires_tf_user(spy, bus, run_ctx):
    with pytest.raises(CriticalWriteError):
        _vault(bus, run_ctx).store_minio_credentials(CredentialStore({}))
    assert spy.calls == []


def test_store_minio_and_postgres_credentials(spy, bus, capture, run_ctx, no_sleep):
    _ready_cluster(spy)
    env = {
        cred.TF_MINIO_ACCESS_KEY: "tf-user",
        cred.TF_MINIO_SECRET_KEY: "tf-secret",
        cred.MINIO_ROOT_USER: "admin-12345678",
        cred.MINIO_ROOT_PASSWORD: "rootpassword",
        cred.POSTGRES_TF_PASSWORD: "pg-tf",
        cred.POSTGRES_PASSWORD: "pg-super",
    }
    v = _vault(bus, run_ctx)
    v.store_minio_credentials(CredentialStore(env))
    v.store_postgres_credentials(CredentialStore(env))

    paths = [e.path for e in capture.of(SecretStored)]
    assert paths == [MINIO_TF_USER_PATH, MINIO_ROOT_PATH, POSTGRES_TF_USER_PATH, POSTGRES_SUPERUSER_PATH]
    assert [e.critical for e in capture.of(SecretStored)] == [True, False, True, False]


def test_bootstrap_inputs_and_github_token_use_root_token(spy, bus, capture, run_ctx):
    _ready_cluster(spy)
    v = _vault(bus, run_ctx)

    assert v.store_bootstrap_inputs({}) is True
    assert v.store_bootstrap_inputs({"cloudflare_token": "cf"})
    assert v.store_github_token("ghp_abc")

    puts = _kv_puts(spy)
    assert puts[0][:7] == ["kubectl", "exec", "-i", "vault-0", "-n", "vault", "--"]
    assert "VAULT_TOKEN=hvs.roottoken" in puts[0]
    assert BOOTSTRAP_INPUTS_PATH in puts[0]
    assert FLUX_GIT_AUTH_PATH in puts[1]
    assert v.kubectl.runner.redact("hvs.roottoken") == "****"


def test_root_writes_skip_without_token(spy, bus, run_ctx):
    spy.on(["kubectl", "get", "pods"], cp(0, "vault-0"))
    spy.on(["kubectl", "get", "secret"], cp(0, ""))
    assert not _vault(bus, run_ctx).store_github_token("ghp_abc")
    assert not _vault(bus, run_ctx).store_github_token(None)
    assert _kv_puts(spy) == []
