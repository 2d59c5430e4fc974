# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/credentials.py

"""
In-memory credential lifecycle.

Credentials are generated here, exported as ``TF_VAR_*`` variables so that
Terraform can consume them, written to Vault by the last phase and cleared
from both the environment and this store when the run ends. Nothing is ever
written to disk.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import string
from typing import Dict, Iterable, List, MutableMapping, Optional

from infraboot.errors import CredentialError

log = logging.getLogger("infraboot")

ACCESS_KEY_RE = re.compile(r"^admin-[a-f0-9]{8}$")
SECRET_KEY_LENGTH = 24
SECRET_KEY_MIN_LENGTH = 20
_ALNUM = string.ascii_letters + string.digits

MINIO_ACCESS_KEY = "TF_VAR_minio_access_key"
MINIO_SECRET_KEY = "TF_VAR_minio_secret_key"
MINIO_ROOT_USER = "TF_VAR_minio_root_user"
MINIO_ROOT_PASSWORD = "TF_VAR_minio_root_password"
POSTGRES_PASSWORD = "TF_VAR_postgres_password"
POSTGRES_TF_PASSWORD = "TF_VAR_postgres_tf_password"

# least-privilege MinIO users created during state migration
TF_MINIO_ACCESS_KEY = "TF_MINIO_ACCESS_KEY"
TF_MINIO_SECRET_KEY = "TF_MINIO_SECRET_KEY"
VAULT_MINIO_ACCESS_KEY = "VAULT_MINIO_ACCESS_KEY"
VAULT_MINIO_SECRET_KEY = "VAULT_MINIO_SECRET_KEY"

BOOTSTRAP_REQUIRED = (MINIO_ROOT_USER, MINIO_ROOT_PASSWORD, POSTGRES_PASSWORD, POSTGRES_TF_PASSWORD)
PHASE2_REQUIRED = (MINIO_ROOT_USER, MINIO_ROOT_PASSWORD, POSTGRES_PASSWORD)

# always scrubbed, whoever set them
SCRUBBED = (
    "MINIO_ROOT_USER",
    "MINIO_ROOT_PASSWORD",
    "MINIO_ACCESS_KEY",
    "MINIO_SECRET_KEY",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "GITHUB_TOKEN",
    "CLOUDFLARE_TUNNEL_TOKEN",
)

_SECRET_NAME_RE = re.compile(r"token|secret|password", re.IGNORECASE)
_SAFE_NAMES = ("HOME", "PATH", "USER", "KUBECONFIG", "WORKSPACE")

VAULT_INPUT_PREFIX = "VAULT_INPUT_"


def random_alnum(length: int) -> str:
    return "".join(secrets.choice(_ALNUM) for _ in range(length))


def masked(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    return f"{value[:4]}..."


def leftover_secrets(environ: Optional[MutableMapping[str, str]] = None) -> List[str]:
    """Names of environment variables that still look like credentials."""
    environ = os.environ if environ is None else environ
    return sorted(
        name
        for name, value in environ.items()
        if value
        and name not in _SAFE_NAMES
        and _SECRET_NAME_RE.search(name)
    )


def collect_vault_inputs(environ: Optional[MutableMapping[str, str]] = None) -> Dict[str, str]:
    """VAULT_INPUT_FOO=bar -> {"foo": "bar"}, empty values skipped."""
    environ = os.environ if environ is None else environ
    return {
        name[len(VAULT_INPUT_PREFIX):].lower(): value
        for name, value in sorted(environ.items())
        if name.startswith(VAULT_INPUT_PREFIX) and len(name) > len(VAULT_INPUT_PREFIX) and value
    }


class CredentialStore:
    """
    Holds generated secrets and the environment names they were exported
    under. ``clear()`` is idempotent and is registered on the cleanup stack.
    """

    def __init__(self, environ: Optional[MutableMapping[str, str]] = None, on_secret=None):
        self.environ = os.environ if environ is None else environ
        self._values: Dict[str, str] = {}
        self._exported: set[str] = set()
        self._on_secret = on_secret

    # ------------------------- storage -------------------------

    def put(self, name: str, value: str, *, export: bool = True) -> None:
        if not value:
            raise CredentialError(f"refusing to store empty credential {name}")
        self._values[name] = value
        if export:
            self.environ[name] = value
            self._exported.add(name)
        if self._on_secret:
            self._on_secret(value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if name in self._values:
            return self._values[name]
        return self.environ.get(name) or default

    def require(self, name: str) -> str:
        value = self.get(name)
        if not value:
            raise CredentialError(f"Missing required credential: {name}")
        return value

    def __contains__(self, name: str) -> bool:
        return bool(self.get(name))

    def names(self) -> List[str]:
        return sorted(self._values)

    # ------------------------- generation -------------------------

    def generate_minio_credentials(self) -> tuple[str, str]:
        access_key = f"admin-{secrets.token_hex(4)}"
        secret_key = random_alnum(SECRET_KEY_LENGTH)
        self._check_minio_pair(access_key, secret_key)

        self.put(MINIO_ACCESS_KEY, access_key)
        self.put(MINIO_SECRET_KEY, secret_key)
        log.info("Generated MinIO credentials in-memory (no files created)")
        return access_key, secret_key

    def generate_bootstrap_credentials(self) -> List[str]:
        """
        Root credentials for the bootstrap MinIO and PostgreSQL deployments.
        Returns the exported names.
        """
        root_user = f"admin-{secrets.token_hex(4)}"
        root_password = random_alnum(SECRET_KEY_LENGTH)
        self._check_minio_pair(root_user, root_password)

        self.put(MINIO_ROOT_USER, root_user)
        self.put(MINIO_ROOT_PASSWORD, root_password)
        self.put("MINIO_ROOT_USER", root_user)
        self.put("MINIO_ROOT_PASSWORD", root_password)
        self.put(POSTGRES_PASSWORD, random_alnum(SECRET_KEY_LENGTH))
        self.put(POSTGRES_TF_PASSWORD, random_alnum(SECRET_KEY_LENGTH))

        log.info("Generated bootstrap credentials in-memory (no files created)")
        return list(BOOTSTRAP_REQUIRED)

    @staticmethod
    def _check_minio_pair(access_key: str, secret_key: str) -> None:
        if not access_key or not secret_key:
            raise CredentialError("Failed to generate MinIO credentials")
        if not ACCESS_KEY_RE.match(access_key):
            raise CredentialError(f"Generated access key has invalid format: {access_key}")
        if len(secret_key) < SECRET_KEY_MIN_LENGTH:
            raise CredentialError(f"Generated secret key too short: {len(secret_key)} characters")

    # ------------------------- validation -------------------------

    def validate(self, required: Iterable[str]) -> None:
        missing = [name for name in required if not self.get(name)]
        if missing:
            raise CredentialError(f"Missing required credential variables: {', '.join(missing)}")
        log.debug("All required credentials present")

    # ------------------------- teardown -------------------------

    def clear(self) -> int:
        """Unset every exported and well-known credential variable. Returns the count removed."""
        names = set(self._exported) | set(SCRUBBED)
        names |= {n for n in self.environ if n.startswith("TF_VAR_")}

        removed = 0
        for name in names:
            if self.environ.pop(name, None) is not None:
                removed += 1

        self._values.clear()
        self._exported.clear()
        log.info("Credentials cleared from memory (%d variables)", removed)
        return removed
