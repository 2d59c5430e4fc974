# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/minio.py

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from infraboot import credentials as cred
from infraboot.config.models import MinioSettings
from infraboot.credentials import CredentialStore
from infraboot.errors import CredentialError
from infraboot.kube.kubectl import Kubectl
from infraboot.utils.shell import CommandRunner

log = logging.getLogger("infraboot")


@dataclass(frozen=True)
class MinioUser:
    # in MinIO the access key is the user name
    access_key: str
    secret_key: str
    bucket: str

    def __repr__(self) -> str:
        return f"MinioUser(access_key={self.access_key!r}, bucket={self.bucket!r})"


def bucket_policy(bucket: str) -> str:
    """Policy granting full access to one bucket and its objects, nothing else."""
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["s3:*"],
                    "Resource": [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"],
                }
            ],
        },
        indent=2,
    )


class MinioAdmin:
    """
    Least-privilege user management through ``mc admin``, talking to the
    bootstrap MinIO over a local port-forward.
    """

    def __init__(self, runner: CommandRunner, settings: MinioSettings):
        self.runner = runner
        self.settings = settings

    @property
    def alias(self) -> str:
        return self.settings.alias

    def set_alias(self, user: str, password: str, endpoint: Optional[str] = None) -> None:
        endpoint = endpoint or self.settings.local_endpoint
        log.info("[MinIO] Configuring mc alias '%s' for %s (user %s...)", self.alias, endpoint, user[:8])
        self.runner.mask(password)
        self.runner.run(["mc", "alias", "set", self.alias, endpoint, user, password, "--quiet"])

    def create_user(self, username: str, bucket: str) -> MinioUser:
        log.info("[MinIO] Creating user '%s' with access to bucket '%s'...", username, bucket)
        secret_key = secrets.token_hex(32)
        self.runner.mask(secret_key)
        policy = f"{username}-policy"

        self.runner.run(["mc", "admin", "policy", "create", self.alias, policy, "/dev/stdin"], input=bucket_policy(bucket))
        self.runner.run(["mc", "admin", "user", "add", self.alias, username, secret_key])
        self.runner.run(["mc", "admin", "policy", "attach", self.alias, policy, "--user", username])

        log.info("[MinIO] User '%s' created with bucket '%s' access", username, bucket)
        return MinioUser(access_key=username, secret_key=secret_key, bucket=bucket)


def create_platform_users(
    admin: MinioAdmin,
    kubectl: Kubectl,
    store: CredentialStore,
) -> tuple[MinioUser, MinioUser]:
    """
    Create the Vault storage user and the Terraform state user.

    The Vault user's keys go to a Kubernetes secret (Vault cannot hold its
    own storage credentials); the tf-user keys stay in memory until phase 2d
    writes them to Vault.
    """
    s = admin.settings
    root_user = store.get("MINIO_ROOT_USER") or store.get(cred.MINIO_ROOT_USER)
    root_password = store.get("MINIO_ROOT_PASSWORD") or store.get(cred.MINIO_ROOT_PASSWORD)
    if not root_user or not root_password:
        raise CredentialError("MinIO root credentials are not set")

    admin.set_alias(root_user, root_password)

    vault_user = admin.create_user(s.vault_user, s.vault_bucket)
    log.info("[MinIO] Storing %s in %s namespace...", s.credentials_secret, s.credentials_namespace)
    kubectl.ensure_namespace(s.credentials_namespace)
    kubectl.apply_secret(
        s.credentials_secret,
        s.credentials_namespace,
        {"access_key": vault_user.access_key, "secret_key": vault_user.secret_key},
    )

    tf_user = admin.create_user(s.tf_user, s.tf_bucket)

    store.put(cred.VAULT_MINIO_ACCESS_KEY, vault_user.access_key)
    store.put(cred.VAULT_MINIO_SECRET_KEY, vault_user.secret_key)
    store.put(cred.TF_MINIO_ACCESS_KEY, tf_user.access_key)
    store.put(cred.TF_MINIO_SECRET_KEY, tf_user.secret_key)

    log.info("[MinIO] users created with least privilege")
    return vault_user, tf_user
