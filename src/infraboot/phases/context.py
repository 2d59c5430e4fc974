# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/phases/context.py

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

from infraboot.config.models import BootstrapConfig
from infraboot.credentials import CredentialStore
from infraboot.kube.kubectl import Kubectl, PortForwards
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import CredentialsCleared
from infraboot.phases.runner import CleanupStack
from infraboot.utils.execution import ExecutionContext
from infraboot.utils.shell import CommandRunner
from infraboot.utils.system import Platform

log = logging.getLogger("infraboot")


@dataclass
class BootstrapContext:
    """
    Shared state handed to every phase.

    ``state`` carries values produced by one phase for a later one
    (kube context name, MinIO user keys, Terraform directory, ...).
    """

    config: BootstrapConfig
    execution: ExecutionContext
    runner: CommandRunner
    kubectl: Kubectl
    credentials: CredentialStore
    bus: EventBus
    run_ctx: Dict[str, Any]
    port_forwards: PortForwards
    cleanup: CleanupStack = field(default_factory=CleanupStack)
    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)
    preserve_credentials: bool = False
    platform: Optional[Platform] = None
    state: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        config: BootstrapConfig,
        *,
        execution: Optional[ExecutionContext] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict[str, Any]] = None,
        environ: Optional[MutableMapping[str, str]] = None,
        preserve_credentials: bool = False,
    ) -> "BootstrapContext":
        execution = execution or ExecutionContext()
        environ = os.environ if environ is None else environ
        runner = CommandRunner(dry_run=execution.dry_run)
        kubectl = Kubectl(runner)
        credentials = CredentialStore(environ, on_secret=runner.mask)
        runner.mask(environ.get("GITHUB_TOKEN"))

        ctx = cls(
            config=config,
            execution=execution,
            runner=runner,
            kubectl=kubectl,
            credentials=credentials,
            bus=bus or EventBus([]),
            run_ctx=run_ctx or {"ts": "", "run_id": "", "env": config.environment, "context": None},
            port_forwards=PortForwards(kubectl),
            environ=environ,
            preserve_credentials=preserve_credentials,
        )
        # registered first so it runs last
        ctx.cleanup.push("clear credentials", lambda: ctx.clear_credentials(force=True))
        ctx.cleanup.push("stop port-forwards", ctx.port_forwards.stop_all)
        return ctx

    # ------------------------- helpers -------------------------

    @property
    def dry_run(self) -> bool:
        return self.execution.dry_run

    @property
    def github_token(self) -> Optional[str]:
        return self.credentials.get("GITHUB_TOKEN")

    @property
    def terraform_dir(self) -> Path:
        """Bootstrap-state checkout shared by phase 1 (apply) and phase 2 (migration)."""
        return self.config.terraform.state_dir or self.config.work_dir / "bootstrap-state"

    def clear_credentials(self, *, force: bool = False) -> int:
        if self.preserve_credentials and not force:
            log.info("Preserving credentials for orchestrated execution")
            return 0
        removed = self.credentials.clear()
        self.bus.emit(CredentialsCleared(count=removed, **self.run_ctx))
        return removed
