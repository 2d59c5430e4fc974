# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/config/models.py

from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

Tier = Literal["small", "medium", "large"]


class TierSizing(BaseModel):
    luks_container: str
    minio_storage: str
    postgresql_storage: str


TIER_SIZING: Dict[str, TierSizing] = {
    "small": TierSizing(luks_container="5G", minio_storage="10Gi", postgresql_storage="8Gi"),
    "medium": TierSizing(luks_container="20G", minio_storage="50Gi", postgresql_storage="20Gi"),
    "large": TierSizing(luks_container="50G", minio_storage="100Gi", postgresql_storage="50Gi"),
}


class GitSettings(BaseModel):
    org: str = "antonioacg"
    ref: str = "main"                       # infra-management ref
    deployments_ref: str = "main"           # deployments repo ref
    deployments_repo: str = "deployments"
    infra_management_repo: str = "infra-management"

    @property
    def deployments_url(self) -> str:
        return f"https://github.com/{self.org}/{self.deployments_repo}"


class ClusterSettings(BaseModel):
    nodes: int = Field(default=1, ge=1)
    tier: Tier = "small"
    context_prefix: str = "k3s-default"
    kubeconfig: Path = Path.home() / ".kube" / "config"
    k3s_kubeconfig: Path = Path("/etc/rancher/k3s/k3s.yaml")
    k3s_install_url: str = "https://get.k3s.io"
    encrypt_node: bool = True
    node_ready_retries: int = 30
    node_ready_delay: int = 10

    @property
    def ha(self) -> bool:
        return self.tier in ("medium", "large") or self.nodes > 1

    @property
    def sizing(self) -> TierSizing:
        return TIER_SIZING[self.tier]


class TerraformSettings(BaseModel):
    state_dir: Optional[Path] = None         # local bootstrap-state checkout; None = download module
    module_subdir: str = "bootstrap-state"
    apply_attempts: int = 3
    apply_delay: float = 5
    backend_config: str = "backend-remote.hcl"


class MinioSettings(BaseModel):
    namespace: str = "storage"
    service: str = "minio"
    port: int = 9000
    alias: str = "minio"
    bootstrap_namespace: str = "bootstrap"
    vault_user: str = "vault-user"
    vault_bucket: str = "vault-storage"
    tf_user: str = "tf-user"
    tf_bucket: str = "terraform-state"
    credentials_secret: str = "vault-minio-credentials"
    credentials_namespace: str = "minio"

    @property
    def local_endpoint(self) -> str:
        return f"http://localhost:{self.port}"


class VaultSettings(BaseModel):
    namespace: str = "vault"
    addr: str = "https://vault.vault.svc:8200"
    pod_selector: str = "app.kubernetes.io/name=vault"
    configurer_selector: str = "app.kubernetes.io/name=vault-configurator"
    configured_marker: str = "successfully configured vault"
    unseal_secret: str = "vault-unseal-keys"
    writer_pod: str = "vault-writer-persistent"
    writer_namespace: str = "vault-jobs"
    writer_service_account: str = "vault-secret-writer"
    writer_image: str = "hashicorp/vault:1.15"
    writer_role: str = "secret-writer"
    ready_timeout: int = 300
    ready_interval: int = 10
    settle_seconds: float = 5
    critical_attempts: int = 3
    critical_delay: float = 5


class FluxSettings(BaseModel):
    version: Optional[str] = None
    namespace: str = "flux-system"
    source_name: str = "flux-system"
    git_secret: str = "flux-git-auth"
    handoff_secret: str = "flux-system"
    source_interval: str = "1m"
    kustomization_interval: str = "10m"
    source_ready_timeout: int = 300
    kustomization_ready_timeout: int = 600


class ToolVersions(BaseModel):
    kubectl: Optional[str] = None            # None = latest stable
    helm: str = "3.14.4"
    flux: Optional[str] = None               # defaults to flux.version
    terraform: str = "1.6.6"
    vault: str = "1.15.2"
    yq: str = "v4.44.1"


class BootstrapConfig(BaseModel):
    environment: str = "production"
    work_dir: Path = Path.home() / "platform-bootstrap"
    git: GitSettings = GitSettings()
    cluster: ClusterSettings = ClusterSettings()
    terraform: TerraformSettings = TerraformSettings()
    minio: MinioSettings = MinioSettings()
    vault: VaultSettings = VaultSettings()
    flux: FluxSettings = FluxSettings()
    tools: ToolVersions = ToolVersions()
