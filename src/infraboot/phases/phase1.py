# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/phases/phase1.py

"""
Phase 1: encrypted k3s node plus the bootstrap MinIO/PostgreSQL
deployed with Terraform on LOCAL state.
"""

from __future__ import annotations

import logging
from typing import List

from infraboot import credentials as cred
from infraboot.encryption import NodeEncryption
from infraboot.errors import ConfigError, CredentialError
from infraboot.k3s import K3s, pick_context_name
from infraboot.observers.events import CredentialsGenerated
from infraboot.phases.context import BootstrapContext
from infraboot.phases.runner import Phase
from infraboot.terraform import TerraformRunner, module_source
from infraboot.utils.shell import require_tools
from infraboot.utils.system import detect_platform

log = logging.getLogger("infraboot")

BOOTSTRAP_NAMESPACE = "bootstrap"
POSTGRES_SELECTOR = "cnpg.io/cluster=bootstrap-postgresql"
MINIO_SELECTOR = "app=minio"


# ------------------------- 1a -------------------------

def validate_and_encrypt(ctx: BootstrapContext) -> str:
    cluster = ctx.config.cluster
    if ctx.execution.skip_validation:
        log.info("Skipping environment validation (orchestrated mode)")
    else:
        if not ctx.github_token:
            raise CredentialError("GITHUB_TOKEN environment variable required")
        require_tools(["curl", "git"])
    ctx.platform = ctx.platform or detect_platform()

    if not cluster.encrypt_node:
        log.info("Node encryption disabled")
        return "encryption disabled"
    mounted = NodeEncryption(ctx.runner).setup(cluster.tier, ctx.platform)
    return "k3s data encrypted" if mounted else "encryption skipped"


# ------------------------- 1b -------------------------

def install_cluster(ctx: BootstrapContext) -> str:
    settings = ctx.config.cluster
    k3s = K3s(ctx.runner, ctx.kubectl, settings)

    context_name = pick_context_name(ctx.kubectl, settings)
    k3s.install()
    in_use = k3s.configure_kubeconfig(context_name)
    ctx.state["kube_context"] = in_use
    ctx.run_ctx["context"] = in_use

    k3s.wait_nodes()
    nodes = k3s.validate()
    return f"context {in_use}, {nodes} node(s)"


# ------------------------- 1c -------------------------

def prepare_workspace(ctx: BootstrapContext) -> TerraformRunner:
    tf_settings = ctx.config.terraform
    workdir = ctx.terraform_dir
    tf = TerraformRunner(ctx.runner, workdir, settings=tf_settings, environ=ctx.environ)

    if tf_settings.state_dir is not None:
        if not (workdir / "main.tf").is_file() and not ctx.dry_run:
            raise ConfigError(f"main.tf not found in {workdir} (expected infra-management/bootstrap-state)")
        log.info("Using local Terraform files: %s", workdir)
        return tf

    if (workdir / "main.tf").is_file():
        log.info("Reusing Terraform files in %s", workdir)
        return tf

    token = ctx.github_token or ""
    tf.init_from_module(module_source(ctx.config.git, token, tf_settings))
    log.info("Downloaded Terraform files: %s", workdir)
    return tf


def export_sizing(ctx: BootstrapContext) -> None:
    cluster = ctx.config.cluster
    sizing = cluster.sizing
    ctx.environ["TF_VAR_resource_tier"] = cluster.tier
    ctx.environ["TF_VAR_node_count"] = str(cluster.nodes)
    ctx.environ["TF_VAR_minio_storage_size"] = sizing.minio_storage
    ctx.environ["TF_VAR_postgresql_storage_size"] = sizing.postgresql_storage


def deploy_storage(ctx: BootstrapContext) -> str:
    tf = prepare_workspace(ctx)
    ctx.state["terraform_dir"] = tf.workdir

    names = ctx.credentials.generate_bootstrap_credentials()
    ctx.credentials.validate(cred.BOOTSTRAP_REQUIRED)
    ctx.bus.emit(CredentialsGenerated(names=names, **ctx.run_ctx))
    export_sizing(ctx)

    log.info("Initializing Terraform with LOCAL state...")
    tf.init()
    tf.plan_apply_with_retry()

    verify_foundation(ctx)

    # standalone runs drop the credentials here, orchestrated runs keep them for phase 2
    ctx.clear_credentials()
    return f"bootstrap storage deployed from {tf.workdir}"


def verify_foundation(ctx: BootstrapContext) -> None:
    log.info("Waiting for MinIO to be ready...")
    ctx.kubectl.wait_condition("pod", namespace=BOOTSTRAP_NAMESPACE, selector=MINIO_SELECTOR, timeout=180)
    log.info("Waiting for PostgreSQL to be ready...")
    ctx.kubectl.wait_condition("pod", namespace=BOOTSTRAP_NAMESPACE, selector=POSTGRES_SELECTOR, timeout=180)
    log.info("Bootstrap foundation verified (MinIO state storage, PostgreSQL state locking)")


def build_phases() -> List[Phase]:
    return [
        Phase("1a", validate_and_encrypt, "Environment validation and node encryption"),
        Phase("1b", install_cluster, "k3s cluster installation"),
        Phase("1c", deploy_storage, "Bootstrap storage deployment (local state)"),
    ]
