# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/phases/phase0.py

"""
Phase 0: environment validation, tool installation and configuration.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from infraboot.errors import CredentialError
from infraboot.phases.context import BootstrapContext
from infraboot.phases.runner import Phase
from infraboot.tools import FLUX_DEFAULT_VERSION, ToolInstaller, installed_flux_version
from infraboot.utils.shell import require_tools
from infraboot.utils.system import detect_platform

log = logging.getLogger("infraboot")


def validate_environment(ctx: BootstrapContext) -> str:
    cluster = ctx.config.cluster
    if not ctx.execution.skip_validation:
        if not ctx.github_token:
            raise CredentialError('GITHUB_TOKEN environment variable required (use GITHUB_TOKEN="test" for testing)')
        require_tools(["curl", "git"])
    ctx.platform = detect_platform()
    return f"{cluster.nodes} node(s), {cluster.tier} tier, {ctx.platform}"


def install_tools(ctx: BootstrapContext) -> str:
    platform = ctx.platform or detect_platform()
    installer = ToolInstaller(ctx.runner, ctx.config, platform)
    installer.install_system_packages()
    installed = installer.install_all()

    log.info("Verifying all prerequisites...")
    installer.verify()
    return f"installed: {', '.join(installed)}" if installed else "all tools present"


def resolve_flux_version(ctx: BootstrapContext) -> str:
    version: Optional[str] = ctx.config.flux.version or ctx.config.tools.flux
    if not version and not ctx.dry_run:
        version = installed_flux_version(ctx.runner)
    return (version or FLUX_DEFAULT_VERSION).lstrip("v")


def configure_environment(ctx: BootstrapContext) -> str:
    cfg = ctx.config
    flux_version = resolve_flux_version(ctx)
    cfg.flux.version = flux_version

    ctx.environ["KUBECONFIG"] = str(cfg.cluster.kubeconfig)
    ctx.environ["NODE_COUNT"] = str(cfg.cluster.nodes)
    ctx.environ["RESOURCE_TIER"] = cfg.cluster.tier
    ctx.environ["FLUX_VERSION"] = flux_version
    return f"KUBECONFIG={cfg.cluster.kubeconfig}, Flux v{flux_version}"


def build_phases() -> List[Phase]:
    return [
        Phase("0a", validate_environment, "Environment validation"),
        Phase("0b", install_tools, "Tool installation"),
        Phase("0c", configure_environment, "Environment configuration"),
    ]
