# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/phases/phase2.py

"""
Phase 2: migrate bootstrap state into MinIO, install Flux and persist the
bootstrap credentials into Vault once GitOps has brought it up.

Subphases ``2a``..``2d`` can be used with ``stop_after``.
"""

from __future__ import annotations

import logging
from typing import List

from infraboot import credentials as cred
from infraboot.credentials import collect_vault_inputs
from infraboot.errors import CommandError, ConfigError, CredentialError, InfrabootError, PrerequisiteError
from infraboot.flux import Flux
from infraboot.minio import MinioAdmin, create_platform_users
from infraboot.phases.context import BootstrapContext
from infraboot.phases.runner import Phase
from infraboot.terraform import TerraformRunner
from infraboot.utils.network import http_ok
from infraboot.utils.wait import wait_until
from infraboot.vault import VaultClient

log = logging.getLogger("infraboot")

VAULT_STORAGE_SECRET = "vault-storage-credentials"
POSTGRES_NAMESPACE = "databases"
POSTGRES_SERVICE = "postgresql-rw"


def _flux(ctx: BootstrapContext) -> Flux:
    return Flux(ctx.runner, ctx.kubectl, ctx.config.flux, ctx.config.git)


def _vault(ctx: BootstrapContext) -> VaultClient:
    client = ctx.state.get("vault")
    if client is None:
        client = VaultClient(ctx.kubectl, ctx.config.vault, bus=ctx.bus, run_ctx=ctx.run_ctx, cleanup=ctx.cleanup)
        ctx.state["vault"] = client
    return client


def _soft_wait(ctx: BootstrapContext, what: str, *, namespace: str, selector: str, timeout: int) -> bool:
    """``kubectl wait`` whose failure is only a warning."""
    log.info("Waiting for %s...", what)
    if ctx.kubectl.wait_condition("pod", namespace=namespace, selector=selector, timeout=timeout, check=False):
        log.info("%s is ready", what)
        return True
    log.warning("%s pods not found or not ready (check: kubectl get pods -n %s)", what, namespace)
    return False


# ------------------------- 2a -------------------------

def validate_prerequisites(ctx: BootstrapContext) -> str:
    if ctx.execution.skip_validation:
        log.info("Skipping validation (orchestrated mode)")
        return "skipped"

    if not ctx.config.flux.version:
        raise ConfigError("FLUX_VERSION is required (set by phase 0)")
    try:
        ctx.credentials.validate(cred.PHASE2_REQUIRED)
    except CredentialError as exc:
        raise CredentialError(f"{exc}; these are generated by phase 1") from exc
    if not ctx.github_token:
        raise CredentialError("GITHUB_TOKEN required for Flux git authentication")

    m = ctx.config.minio
    if not ctx.kubectl.exists("svc", m.service, namespace=m.namespace):
        raise PrerequisiteError(f"MinIO service not found in {m.namespace} namespace; run phase 1 first")
    if not ctx.kubectl.exists("svc", POSTGRES_SERVICE, namespace=POSTGRES_NAMESPACE):
        raise PrerequisiteError(f"PostgreSQL service not found in {POSTGRES_NAMESPACE} namespace; run phase 1 first")
    return f"Flux v{ctx.config.flux.version}, phase 1 dependencies present"


# ------------------------- 2b -------------------------

def _start_minio_forward(ctx: BootstrapContext) -> None:
    m = ctx.config.minio
    if ctx.state.get("minio_forward"):
        return
    ctx.port_forwards.start(m.namespace, f"svc/{m.service}", f"{m.port}:{m.port}")
    ctx.state["minio_forward"] = True
    if ctx.dry_run:
        return
    health = f"{m.local_endpoint}/minio/health/ready"
    wait_until(lambda: http_ok(health), 30, 2, description="MinIO health endpoint", bus=ctx.bus, run_ctx=ctx.run_ctx)


def migrate_state(ctx: BootstrapContext) -> str:
    workdir = ctx.state.get("terraform_dir") or ctx.terraform_dir
    if not workdir.is_dir() and not ctx.dry_run:
        raise PrerequisiteError(f"Bootstrap state directory not found: {workdir} (phase 1 must run first)")
    tf = TerraformRunner(ctx.runner, workdir, settings=ctx.config.terraform, environ=ctx.environ)

    if tf.has_local_state():
        log.info("Found local state, performing migration...")
        tf.backup("terraform.tfstate", "backend.tf")
        tf.write_backend("s3")
        _start_minio_forward(ctx)

        access_key = ctx.credentials.require(cred.MINIO_ROOT_USER)
        secret_key = ctx.credentials.require(cred.MINIO_ROOT_PASSWORD)
        ctx.credentials.put("AWS_ACCESS_KEY_ID", access_key)
        ctx.credentials.put("AWS_SECRET_ACCESS_KEY", secret_key)

        tf.migrate_state(environment=ctx.config.environment, endpoint=ctx.config.minio.local_endpoint)
        outcome = "state migrated to MinIO"
    else:
        log.info("No local state found, initializing with remote backend...")
        tf.init(ctx.config.terraform.backend_config)
        outcome = "remote backend initialized"

    _start_minio_forward(ctx)
    create_platform_users(MinioAdmin(ctx.runner, ctx.config.minio), ctx.kubectl, ctx.credentials)
    return f"{outcome}; MinIO users created"


# ------------------------- 2c -------------------------

def create_vault_storage_secret(ctx: BootstrapContext) -> None:
    namespace = ctx.config.vault.namespace
    ctx.kubectl.ensure_namespace(namespace)

    access_key = ctx.credentials.get(cred.VAULT_MINIO_ACCESS_KEY)
    secret_key = ctx.credentials.get(cred.VAULT_MINIO_SECRET_KEY)
    source = "vault-user"
    if not access_key or not secret_key:
        log.warning("vault-user credentials not found, using MinIO root credentials")
        access_key = ctx.credentials.require(cred.MINIO_ROOT_USER)
        secret_key = ctx.credentials.require(cred.MINIO_ROOT_PASSWORD)
        source = "root"

    ctx.kubectl.apply_secret(
        VAULT_STORAGE_SECRET, namespace, {"ACCESS_KEY_ID": access_key, "SECRET_ACCESS_KEY": secret_key},
    )
    log.info("Vault storage credentials secret created (using %s)", source)


def bootstrap_flux(ctx: BootstrapContext) -> str:
    git = ctx.config.git
    flux = _flux(ctx)
    flux.install()
    flux.create_git_auth_secret(ctx.credentials.require("GITHUB_TOKEN"))
    create_vault_storage_secret(ctx)

    log.info("Creating Flux sync: %s@%s path clusters/%s", git.deployments_url, git.deployments_ref, ctx.config.environment)
    flux.create_source()
    flux.create_kustomization(ctx.config.environment)
    return "Flux installed and sync applied"


# ------------------------- 2d -------------------------

def validate_vault(ctx: BootstrapContext) -> None:
    v = ctx.config.vault
    _soft_wait(ctx, "Bank-Vaults operator", namespace="vault-operator",
               selector="app.kubernetes.io/name=vault-operator", timeout=300)
    _soft_wait(ctx, "Vault", namespace=v.namespace, selector=v.pod_selector, timeout=600)
    if ctx.kubectl.exists("secret", v.unseal_secret, namespace=v.namespace):
        log.info("Vault unseal keys secret exists")
    else:
        log.warning("Vault unseal keys not found yet; Bank-Vaults creates them during initialization")


def validate_external_secrets(ctx: BootstrapContext) -> None:
    _soft_wait(ctx, "External Secrets operator", namespace="external-secrets-system",
               selector="app.kubernetes.io/name=external-secrets", timeout=300)
    if ctx.kubectl.exists("clustersecretstore", "vault-backend"):
        log.info("ClusterSecretStore vault-backend exists")
    else:
        log.warning("ClusterSecretStore not found yet; it will be created by Flux")


def validate_and_persist(ctx: BootstrapContext) -> str:
    flux = _flux(ctx)
    try:
        flux.wait_ready()
    except CommandError as exc:
        raise InfrabootError(f"Flux failed to sync (check: flux get sources git / flux get kustomizations): {exc}") from exc

    validate_vault(ctx)

    vault = _vault(ctx)
    vault.store_bootstrap_inputs(collect_vault_inputs(ctx.environ))

    # in-memory only: failure here loses them
    vault.store_minio_credentials(ctx.credentials)
    vault.store_postgres_credentials(ctx.credentials)

    validate_external_secrets(ctx)
    vault.store_github_token(ctx.github_token)
    _soft_wait(ctx, "Nginx Ingress", namespace="ingress-nginx",
               selector="app.kubernetes.io/name=ingress-nginx", timeout=180)

    log.info("Current Flux status:\n%s", flux.status())
    return "credentials persisted to Vault"


def build_phases() -> List[Phase]:
    return [
        Phase("2a", validate_prerequisites, "Prerequisites & validation"),
        Phase("2b", migrate_state, "Bootstrap state migration + MinIO users"),
        Phase("2c", bootstrap_flux, "Flux GitOps bootstrap"),
        Phase("2d", validate_and_persist, "Validation and credential persistence"),
    ]
