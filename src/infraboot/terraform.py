# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/terraform.py

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, MutableMapping, Optional

from jinja2 import Environment, FileSystemLoader

from infraboot.config.models import GitSettings, TerraformSettings
from infraboot.errors import CommandError, InfrabootError
from infraboot.utils.retry import RetryError, retry
from infraboot.utils.shell import CommandRunner

log = logging.getLogger("infraboot")

TEMPLATES_DIR = Path(__file__).parent / "templates"
BACKUP_SUFFIX = ".backup.%Y%m%d_%H%M%S"
PLAN_PREFIX = "tfplan-attempt"


def module_source(git: GitSettings, token: str, settings: TerraformSettings) -> str:
    return (
        f"git::https://{token}@github.com/{git.org}/{git.infra_management_repo}.git"
        f"//{settings.module_subdir}?ref={git.ref}"
    )


def render_backend(backend: str, *, backend_config: str = "backend-remote.hcl") -> str:
    env = Environment(loader=FileSystemLoader(str(TEMPLATES_DIR)), autoescape=False, keep_trailing_newline=True)
    description = "migrated to remote S3 backend (MinIO)" if backend == "s3" else "local bootstrap state"
    return env.get_template("backend.tf.j2").render(
        backend=backend,
        backend_config=backend_config,
        description=description,
    )


class TerraformRunner:
    """
    Runs terraform in one working directory.

    Terraform reads its inputs from ``TF_VAR_*`` and ``AWS_*`` variables, so
    the credential environment is passed through explicitly.
    """

    def __init__(
        self,
        runner: CommandRunner,
        workdir: Path,
        *,
        settings: Optional[TerraformSettings] = None,
        environ: Optional[MutableMapping[str, str]] = None,
    ):
        self.runner = runner
        self.workdir = Path(workdir)
        self.settings = settings or TerraformSettings()
        self.environ = os.environ if environ is None else environ

    def _tf(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self.runner.run(
            ["terraform", *args],
            cwd=self.workdir,
            env=dict(self.environ),
            check=check,
        )

    # ------------------------- init -------------------------

    def init(self, *backend_configs: str, migrate_state: bool = False, force_copy: bool = False) -> None:
        args = ["init"]
        if migrate_state:
            args.append("-migrate-state")
        args += [f"-backend-config={c}" for c in backend_configs]
        if force_copy:
            args.append("-force-copy")
        self._tf(*args)

    def init_from_module(self, source: str) -> None:
        """Populate an empty working directory from a remote module."""
        self.workdir.mkdir(parents=True, exist_ok=True)
        log.info("[terraform] Downloading Terraform files into %s", self.workdir)
        try:
            self._tf("init", f"-from-module={source}")
        except CommandError as exc:
            raise InfrabootError(
                "Failed to download Terraform files from GitHub; check GITHUB_TOKEN and repository access"
            ) from exc

    # ------------------------- plan / apply -------------------------

    def plan_apply_with_retry(self, attempts: Optional[int] = None, delay: Optional[float] = None) -> Path:
        """
        ``plan -out=tfplan-attemptN`` then ``apply`` it, retried for
        transient failures (chart downloads). Plan files are removed after a
        successful apply and kept for debugging when every attempt failed.
        """
        attempts = attempts or self.settings.apply_attempts
        delay = self.settings.apply_delay if delay is None else delay
        counter = {"n": 0}

        def _warn(attempt: int, exc: Exception) -> None:
            if attempt < attempts:
                log.warning("[terraform] attempt %d/%d failed: %s; retrying", attempt, attempts, exc)

        @retry(retries=attempts, delay=delay, retry_on=(CommandError,), on_retry=_warn)
        def _plan_apply() -> Path:
            counter["n"] += 1
            plan = self.workdir / f"{PLAN_PREFIX}{counter['n']}"
            log.info("[terraform] Creating plan: %s", plan.name)
            try:
                self._tf("plan", f"-out={plan.name}")
            except CommandError:
                plan.unlink(missing_ok=True)
                raise
            log.info("[terraform] Applying plan: %s", plan.name)
            self._tf("apply", plan.name)
            return plan

        try:
            plan = _plan_apply()
        except RetryError as exc:
            log.error("[terraform] apply failed after %d attempts", attempts)
            log.info("[terraform] Plan files preserved for debugging: %s*", PLAN_PREFIX)
            raise InfrabootError(f"terraform apply failed after {attempts} attempts") from exc

        self.remove_plans()
        return plan

    def remove_plans(self) -> int:
        removed = 0
        for plan in self.workdir.glob(f"{PLAN_PREFIX}*"):
            plan.unlink(missing_ok=True)
            removed += 1
        return removed

    # ------------------------- state -------------------------

    @property
    def state_file(self) -> Path:
        return self.workdir / "terraform.tfstate"

    def has_local_state(self) -> bool:
        return self.state_file.is_file() and self.state_file.stat().st_size > 0

    def state_list(self) -> List[str]:
        out = self._tf("state", "list").stdout or ""
        return [line for line in out.splitlines() if line.strip()]

    def backup(self, *names: str) -> List[Path]:
        stamp = datetime.now().strftime(BACKUP_SUFFIX)
        copies = []
        for name in names or ("terraform.tfstate", "backend.tf"):
            src = self.workdir / name
            if not src.exists():
                continue
            dst = src.with_name(src.name + stamp)
            shutil.copy2(src, dst)
            copies.append(dst)
            log.debug("[terraform] backed up %s -> %s", src.name, dst.name)
        return copies

    def write_backend(self, backend: str) -> Path:
        path = self.workdir / "backend.tf"
        path.write_text(render_backend(backend, backend_config=self.settings.backend_config))
        log.info("[terraform] backend.tf now uses the %s backend", backend)
        return path

    def migrate_state(self, *, environment: str, endpoint: str) -> List[str]:
        """
        Move local state into the S3 backend and verify it is readable there.
        Returns the resources listed from the remote state.
        """
        cfg = self.settings.backend_config
        self.init(
            cfg,
            f"key={environment}/bootstrap/terraform.tfstate",
            f"endpoint={endpoint}",
            migrate_state=True,
            force_copy=True,
        )
        try:
            resources = self.state_list()
        except CommandError as exc:
            raise InfrabootError("State migration verification failed") from exc
        log.info("[terraform] state migration completed (%d resources)", len(resources))
        return resources
