# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/vault.py

"""
Writes bootstrap credentials into Vault.

Vault is not reachable from the host, so every write goes through
``kubectl exec``: either a short-lived writer pod that logs in with the
Kubernetes auth method, or (for bootstrap inputs and the GitHub token) the
Vault server pod with the root token. Payloads are JSON piped on stdin, never argv.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

import yaml

from infraboot import credentials as cred
from infraboot.config.models import VaultSettings
from infraboot.credentials import CredentialStore
from infraboot.errors import CommandError, CriticalWriteError, InfrabootError
from infraboot.kube.kubectl import Kubectl
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import SecretStored, SecretStoreFailed
from infraboot.utils.retry import RetryError, retry
from infraboot.utils.wait import wait_until

log = logging.getLogger("infraboot")

SA_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
TOKEN_FILE = "/tmp/vault-token"

MINIO_TF_USER_PATH = "secret/platform/minio/tf-user"
MINIO_ROOT_PATH = "secret/recovery/minio/root"
POSTGRES_TF_USER_PATH = "secret/recovery/postgresql/tf-user"
POSTGRES_SUPERUSER_PATH = "secret/recovery/postgresql/superuser"
BOOTSTRAP_INPUTS_PATH = "secret/bootstrap/inputs"
FLUX_GIT_AUTH_PATH = "secret/flux/git-auth"


class VaultClient:
    def __init__(
        self,
        kubectl: Kubectl,
        settings: VaultSettings,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict[str, Any]] = None,
        cleanup=None,
    ):
        self.kubectl = kubectl
        self.settings = settings
        self.bus = bus or EventBus([])
        self.run_ctx = run_ctx or {"ts": "", "run_id": "", "env": "", "context": None}
        self.cleanup = cleanup
        self._writer_ready = False

    # ------------------------- readiness -------------------------

    def server_pod(self) -> Optional[str]:
        return self.kubectl.first_pod_name(self.settings.namespace, self.settings.pod_selector)

    def is_ready(self) -> bool:
        s = self.settings
        pod = self.server_pod()
        if not pod or not self.kubectl.pod_ready(s.namespace, pod):
            return False

        status = self.kubectl.exec(s.namespace, pod, ["env", "VAULT_SKIP_VERIFY=true", "vault", "status"], check=False)
        if status.returncode != 0:
            log.debug("[vault] %s: vault status rc=%d", pod, status.returncode)
            return False

        configurer = self.kubectl.first_pod_name(s.namespace, s.configurer_selector)
        if not configurer:
            return False
        return s.configured_marker in self.kubectl.logs(s.namespace, configurer)

    def wait_ready(self, timeout: Optional[int] = None, interval: Optional[int] = None) -> None:
        s = self.settings
        timeout = s.ready_timeout if timeout is None else timeout
        interval = s.ready_interval if interval is None else interval
        log.info("Waiting for Vault to be ready (timeout: %ss)...", timeout)
        wait_until(
            self.is_ready,
            timeout,
            interval,
            description="Vault unsealed and configured",
            bus=self.bus,
            run_ctx=self.run_ctx,
        )
        if s.settle_seconds:
            time.sleep(s.settle_seconds)
        log.info("Vault is ready")

    # ------------------------- writer pod -------------------------

    def writer_manifest(self) -> str:
        s = self.settings
        pod = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": s.writer_pod,
                "namespace": s.writer_namespace,
                "labels": {"app.kubernetes.io/name": "vault-writer"},
            },
            "spec": {
                "serviceAccountName": s.writer_service_account,
                "restartPolicy": "Never",
                "containers": [
                    {
                        "name": "vault",
                        "image": s.writer_image,
                        "command": ["sleep", "600"],
                        "env": [
                            {"name": "VAULT_ADDR", "value": s.addr},
                            {"name": "VAULT_SKIP_VERIFY", "value": "true"},
                        ],
                    }
                ],
            },
        }
        return yaml.safe_dump(pod, sort_keys=False)

    def start_writer(self) -> None:
        """
        Start the writer pod and log in with the Kubernetes auth method.
        The pod is removed again when anything in here fails.
        """
        if self._writer_ready:
            return
        s = self.settings
        log.info("Starting Vault writer pod %s/%s", s.writer_namespace, s.writer_pod)
        if self.cleanup is not None:
            self.cleanup.push("delete vault writer pod", self.stop_writer)

        try:
            self.kubectl.delete("pod", s.writer_pod, namespace=s.writer_namespace)
            self.kubectl.apply_manifest(self.writer_manifest())
            self.kubectl.wait_condition(f"pod/{s.writer_pod}", namespace=s.writer_namespace, timeout=60)
            time.sleep(3)
            login = (
                f"vault write -field=token auth/kubernetes/login role={s.writer_role} "
                f'jwt="$(cat {SA_TOKEN_PATH})" > {TOKEN_FILE}'
            )
            self.kubectl.exec(s.writer_namespace, s.writer_pod, ["/bin/sh", "-c", login])
        except (InfrabootError, TimeoutError):
            log.error("Vault writer pod failed to start or authenticate")
            self.stop_writer()
            raise

        self._writer_ready = True
        log.info("Vault writer authenticated (role %s)", s.writer_role)

    def stop_writer(self) -> None:
        s = self.settings
        self.kubectl.delete("pod", s.writer_pod, namespace=s.writer_namespace)
        self._writer_ready = False

    # ------------------------- writes -------------------------

    def kv_put(self, path: str, data: Mapping[str, str]) -> None:
        self.start_writer()
        s = self.settings
        script = f'VAULT_TOKEN="$(cat {TOKEN_FILE})" vault kv put "$0" -'
        self.kubectl.exec(
            s.writer_namespace,
            s.writer_pod,
            ["/bin/sh", "-c", script, path],
            input=json.dumps(dict(data)),
        )

    def store_critical(self, path: str, data: Mapping[str, str]) -> None:
        """
        Write a secret that only exists in memory. Retried; failure is fatal
        because the value would otherwise be lost with the process.
        """
        s = self.settings
        attempts = {"n": 0}

        def _warn(attempt: int, exc: Exception) -> None:
            log.warning("Storing %s: attempt %d/%d failed: %s", path, attempt, s.critical_attempts, exc)

        @retry(retries=s.critical_attempts, delay=s.critical_delay, retry_on=(InfrabootError, TimeoutError), on_retry=_warn)
        def _put() -> None:
            attempts["n"] += 1
            self.kv_put(path, data)

        try:
            _put()
        except RetryError as exc:
            self.bus.emit(SecretStoreFailed(path=path, critical=True, error=str(exc.last_error), **self.run_ctx))
            log.error("CRITICAL: failed to store %s after %d attempts", path, s.critical_attempts)
            raise CriticalWriteError(f"failed to store {path} after {s.critical_attempts} attempts") from exc

        self.bus.emit(SecretStored(path=path, critical=True, attempts=attempts["n"], **self.run_ctx))
        log.info("Stored %s in Vault", path)

    def store_best_effort(self, path: str, data: Mapping[str, str]) -> bool:
        try:
            self.kv_put(path, data)
        except (InfrabootError, TimeoutError) as exc:
            log.warning("Failed to store %s in Vault: %s", path, exc)
            self.bus.emit(SecretStoreFailed(path=path, critical=False, error=str(exc), **self.run_ctx))
            return False
        self.bus.emit(SecretStored(path=path, critical=False, **self.run_ctx))
        log.info("Stored %s in Vault", path)
        return True

    def root_token(self) -> Optional[str]:
        token = self.kubectl.secret_value(self.settings.unseal_secret, "root-token", namespace=self.settings.namespace)
        if token:
            self.kubectl.runner.mask(token)
        return token

    def root_kv_put(self, path: str, data: Mapping[str, str]) -> bool:
        """Best-effort write through the server pod with the root token."""
        pod = self.server_pod()
        token = self.root_token() if pod else None
        if not pod or not token:
            log.warning("Vault pod or root token not available, skipping %s", path)
            return False
        argv = ["env", f"VAULT_TOKEN={token}", "VAULT_SKIP_VERIFY=true", "vault", "kv", "put", path, "-"]
        try:
            self.kubectl.exec(self.settings.namespace, pod, argv, input=json.dumps(dict(data)))
        except CommandError as exc:
            log.warning("Failed to store %s in Vault: %s", path, exc)
            self.bus.emit(SecretStoreFailed(path=path, critical=False, error=str(exc), **self.run_ctx))
            return False
        self.bus.emit(SecretStored(path=path, critical=False, **self.run_ctx))
        log.info("Stored %s in Vault", path)
        return True

    # ------------------------- credential sets -------------------------

    def store_minio_credentials(self, creds: CredentialStore) -> None:
        log.info("Storing MinIO credentials in Vault...")
        access_key = creds.get(cred.TF_MINIO_ACCESS_KEY)
        secret_key = creds.get(cred.TF_MINIO_SECRET_KEY)
        if not access_key or not secret_key:
            raise CriticalWriteError("MinIO tf-user credentials not found; they would be lost")

        self.wait_ready()
        self.store_critical(MINIO_TF_USER_PATH, {"access_key": access_key, "secret_key": secret_key})

        root_user = creds.get(cred.MINIO_ROOT_USER)
        root_password = creds.get(cred.MINIO_ROOT_PASSWORD)
        if root_user and root_password:
            self.store_best_effort(MINIO_ROOT_PATH, {"root_user": root_user, "root_password": root_password})

    def store_postgres_credentials(self, creds: CredentialStore) -> None:
        log.info("Storing PostgreSQL credentials in Vault...")
        tf_password = creds.get(cred.POSTGRES_TF_PASSWORD)
        if not tf_password:
            raise CriticalWriteError(f"PostgreSQL tf-user password not found ({cred.POSTGRES_TF_PASSWORD})")

        self.store_critical(POSTGRES_TF_USER_PATH, {"username": "tf-user", "password": tf_password})

        superuser = creds.get(cred.POSTGRES_PASSWORD)
        if superuser:
            self.store_best_effort(POSTGRES_SUPERUSER_PATH, {"username": "postgres", "password": superuser})

    def store_bootstrap_inputs(self, inputs: Mapping[str, str]) -> bool:
        if not inputs:
            log.debug("No VAULT_INPUT_* variables set")
            return True
        log.info("Storing %d bootstrap input(s) in Vault: %s", len(inputs), ", ".join(sorted(inputs)))
        return self.root_kv_put(BOOTSTRAP_INPUTS_PATH, inputs)

    def store_github_token(self, token: Optional[str]) -> bool:
        if not token:
            log.warning("GITHUB_TOKEN not set, skipping %s", FLUX_GIT_AUTH_PATH)
            return False
        return self.root_kv_put(FLUX_GIT_AUTH_PATH, {"username": "git", "password": token})
