# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/flux.py

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

from infraboot.config.models import FluxSettings, GitSettings
from infraboot.errors import ConfigError, HandoffError, InfrabootError
from infraboot.kube import client as kube_client
from infraboot.kube.kubectl import Kubectl
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import HandoffCompleted, HandoffRolledBack, HandoffStarted
from infraboot.utils.shell import CommandRunner
from infraboot.utils.wait import wait_until

log = logging.getLogger("infraboot")

SOURCE_CONTROLLER = "source-controller"
GITHUB_TOKEN_PREFIX = "ghp_"
SERVER_MANAGED_FIELDS = ("resourceVersion", "uid", "generation", "managedFields", "creationTimestamp")


def normalize_version(version: Optional[str]) -> str:
    if not version:
        raise ConfigError("FLUX_VERSION is not set")
    return version if version.startswith("v") else f"v{version}"


class Flux:
    """flux CLI wrapper for the bootstrap GitRepository/Kustomization pair."""

    def __init__(self, runner: CommandRunner, kubectl: Kubectl, settings: FluxSettings, git: GitSettings):
        self.runner = runner
        self.kubectl = kubectl
        self.settings = settings
        self.git = git

    def _flux(self, *args: str, check: bool = True):
        cmd = ["flux"]
        if self.kubectl.context:
            cmd += ["--context", self.kubectl.context]
        return self.runner.run(cmd + list(args), check=check)

    def install(self) -> None:
        version = normalize_version(self.settings.version)
        log.info("Installing Flux controllers (%s)...", version)
        self._flux("install", f"--version={version}")
        self._flux("check")
        log.info("Flux controllers installed")

    def create_git_auth_secret(self, token: str) -> None:
        s = self.settings
        self.kubectl.apply_secret(s.git_secret, s.namespace, {"username": "git", "password": token})
        log.info("Created %s secret in %s", s.git_secret, s.namespace)

    def create_source(self) -> None:
        s = self.settings
        self._flux(
            "create", "source", "git", s.source_name,
            f"--url={self.git.deployments_url}",
            f"--branch={self.git.deployments_ref}",
            f"--secret-ref={s.git_secret}",
            f"--interval={s.source_interval}",
        )

    def create_kustomization(self, environment: str) -> None:
        s = self.settings
        self._flux(
            "create", "kustomization", s.source_name,
            f"--source=GitRepository/{s.source_name}",
            f"--path=clusters/{environment}",
            "--prune=true",
            f"--interval={s.kustomization_interval}",
        )

    def wait_ready(self) -> None:
        s = self.settings
        log.info("Waiting for GitRepository to be ready (%ss)...", s.source_ready_timeout)
        self.kubectl.wait_condition(
            f"gitrepository/{s.source_name}", namespace=s.namespace, timeout=s.source_ready_timeout,
        )
        log.info("Waiting for Kustomization to be ready (%ss)...", s.kustomization_ready_timeout)
        self.kubectl.wait_condition(
            f"kustomization/{s.source_name}", namespace=s.namespace, timeout=s.kustomization_ready_timeout,
        )

    def reconcile(self, what: str = "source git", *, timeout: Optional[str] = None, check: bool = True) -> bool:
        args = ["reconcile", *what.split(), self.settings.source_name]
        if timeout:
            args.append(f"--timeout={timeout}")
        return self._flux(*args, check=check).returncode == 0

    def status(self) -> str:
        sections = []
        for args in (["sources", "git"], ["kustomizations"], ["helmreleases", "-A"]):
            cp = self._flux("get", *args, check=False)
            if cp.returncode != 0:
                log.warning("Could not get %s", args[0])
            sections.append(f"--- {args[0]} ---\n{(cp.stdout or '').rstrip()}")
        return "\n".join(sections)


class FluxHandoff:
    """
    Switch Flux Git auth from the bootstrap secret to the
    External-Secrets-managed secret synced from Vault.

    Nothing is changed until the target secret has synced a valid token;
    after the patch, a failed reconcile restores the backed-up GitRepository.
    """

    def __init__(
        self,
        flux: Flux,
        *,
        work_dir: Path,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict[str, Any]] = None,
        sync_timeout: int = 180,
        verify_timeout: int = 60,
        wait_available: Optional[Callable[..., None]] = None,
    ):
        self.flux = flux
        self.kubectl = flux.kubectl
        self.settings = flux.settings
        self.work_dir = Path(work_dir)
        self.bus = bus or EventBus([])
        self.run_ctx = run_ctx or {"ts": "", "run_id": "", "env": "", "context": None}
        self.sync_timeout = sync_timeout
        self.verify_timeout = verify_timeout
        self._wait_available = wait_available or kube_client.wait_for_deployment_available

    @property
    def source(self) -> str:
        return f"gitrepository/{self.settings.source_name}"

    def _secret_synced(self) -> bool:
        s = self.settings
        if not self.kubectl.exists("secret", s.handoff_secret, namespace=s.namespace):
            return False
        return self.kubectl.condition_status("externalsecret", s.git_secret, s.namespace) == "True"

    def _restart_source_controller(self) -> None:
        ns = self.settings.namespace
        self.kubectl.rollout_restart(SOURCE_CONTROLLER, ns)
        self._wait_available(
            SOURCE_CONTROLLER,
            ns,
            timeout_seconds=120,
            kube_context=self.kubectl.context,
            kubeconfig=self.kubectl.kubeconfig,
        )

    def backup(self) -> Tuple[Path, str]:
        """
        Save the GitRepository to the work dir and return the file together
        with the secretRef it currently uses. Server-managed fields are
        dropped so the file can be re-applied after the object changed.
        """
        s = self.settings
        doc = yaml.safe_load(self.kubectl.get_yaml("gitrepository", s.source_name, namespace=s.namespace)) or {}
        doc.pop("status", None)
        meta = doc.get("metadata") or {}
        for field in SERVER_MANAGED_FIELDS:
            meta.pop(field, None)
        previous = ((doc.get("spec") or {}).get("secretRef") or {}).get("name") or s.git_secret

        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / f"gitrepository-{s.source_name}.backup.{datetime.now():%Y%m%d_%H%M%S}.yaml"
        path.write_text(yaml.safe_dump(doc, sort_keys=False))
        log.info("GitRepository backed up to %s (secretRef %s)", path, previous)
        return path, previous

    def run(self) -> None:
        s = self.settings
        self.bus.emit(HandoffStarted(source=self.source, target_secret=s.handoff_secret, **self.run_ctx))

        log.info("Reconciling Flux source and kustomization...")
        self.flux.reconcile("source git", check=False)
        self.flux.reconcile("kustomization", check=False)

        log.info("Waiting for External Secrets to sync %s (%ss)...", s.handoff_secret, self.sync_timeout)
        wait_until(
            self._secret_synced,
            self.sync_timeout,
            5,
            description=f"secret {s.handoff_secret} synced by External Secrets",
            bus=self.bus,
            run_ctx=self.run_ctx,
        )

        password = self.kubectl.secret_value(s.handoff_secret, "password", namespace=s.namespace) or ""
        if not password.startswith(GITHUB_TOKEN_PREFIX):
            raise HandoffError(f"secret {s.handoff_secret} does not hold a valid GitHub token; nothing changed")
        self.kubectl.runner.mask(password)

        backup, previous = self.backup()
        log.info("Patching %s to use secret %s", self.source, s.handoff_secret)
        self._point_at(s.handoff_secret)

        try:
            self._restart_source_controller()
            wait_until(
                lambda: self.flux.reconcile("source git", timeout="30s", check=False),
                self.verify_timeout,
                10,
                description=f"{self.source} reconciling with {s.handoff_secret}",
                bus=self.bus,
                run_ctx=self.run_ctx,
            )
        except (InfrabootError, TimeoutError) as exc:
            log.error("Handoff verification failed, rolling back to %s: %s", previous, exc)
            try:
                self._rollback(previous)
            except (InfrabootError, TimeoutError) as rollback_exc:
                log.error("Rollback failed; restore %s by hand from %s", self.source, backup)
                raise HandoffError(
                    f"Flux auth handoff failed ({exc}) and the rollback failed too: {rollback_exc}. "
                    f"Backup: {backup}"
                ) from rollback_exc
            self.bus.emit(HandoffRolledBack(source=self.source, error=str(exc), **self.run_ctx))
            raise HandoffError(f"Flux auth handoff failed and was rolled back to {previous}: {exc}") from exc

        self.bus.emit(HandoffCompleted(source=self.source, target_secret=s.handoff_secret, **self.run_ctx))
        log.info("Flux now authenticates with %s", s.handoff_secret)

    def _point_at(self, secret: str) -> None:
        s = self.settings
        self.kubectl.patch_merge(
            "gitrepository", s.source_name, {"spec": {"secretRef": {"name": secret}}}, namespace=s.namespace,
        )

    def _rollback(self, previous: str) -> None:
        self._point_at(previous)
        self._restart_source_controller()
