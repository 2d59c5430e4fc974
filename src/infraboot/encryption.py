# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/encryption.py

from __future__ import annotations

import base64
import logging
import secrets
from pathlib import Path
from typing import Optional

from infraboot.config.models import TIER_SIZING
from infraboot.errors import InfrabootError, PrerequisiteError
from infraboot.utils.shell import CommandRunner, which
from infraboot.utils.system import Platform, as_root

log = logging.getLogger("infraboot")

CONTAINER_FILE = Path("/var/lib/rancher-k3s-encrypted.img")
MAPPER_NAME = "k3s_encrypted"
MOUNT_POINT = Path("/var/lib/rancher/k3s")
FSTAB = Path("/etc/fstab")
DEFAULT_SIZE = "10G"


def container_size(tier: str) -> str:
    sizing = TIER_SIZING.get(tier)
    return sizing.luks_container if sizing else DEFAULT_SIZE


def fstab_line() -> str:
    return f"/dev/mapper/{MAPPER_NAME} {MOUNT_POINT} ext4 defaults,noauto 0 2"


class NodeEncryption:
    """
    LUKS container holding the k3s data directory.

    The passphrase is generated per run, piped on stdin and never stored:
    after a reboot the container has to be unlocked by hand.
    """

    def __init__(self, runner: CommandRunner, *, fstab: Path = FSTAB):
        self.runner = runner
        self.fstab = fstab

    def _root(self, *argv: str, **kwargs):
        return self.runner.run(as_root(argv), **kwargs)

    def is_mounted(self) -> bool:
        mounts = self.runner.output(["mount"], check=False)
        return any(
            f"/dev/mapper/{MAPPER_NAME}" in line and "rancher/k3s" in line
            for line in mounts.splitlines()
        )

    def setup(self, tier: str, platform: Optional[Platform] = None) -> bool:
        """Returns True when the container is (now) mounted, False when skipped."""
        if platform is not None and platform.os == "darwin":
            log.warning("LUKS encryption not available on macOS; k3s data will not be encrypted")
            return False

        if self.runner.ok(as_root(["systemctl", "is-active", "--quiet", "k3s"])):
            log.info("Stopping existing k3s for encryption setup...")
            self._root("systemctl", "stop", "k3s")
            self._root("umount", str(MOUNT_POINT), check=False)
            self._root("cryptsetup", "luksClose", MAPPER_NAME, check=False)

        if self.is_mounted():
            log.info("LUKS container encryption already configured")
            return True

        if not which("cryptsetup") and not self.runner.dry_run:
            raise PrerequisiteError("cryptsetup not found; run phase 0 tool installation first")

        size = container_size(tier)
        passphrase = base64.b64encode(secrets.token_bytes(32)).decode()
        self.runner.mask(passphrase)
        gigabytes = int(size.rstrip("G"))

        log.info("Creating LUKS container (%s)...", size)
        self._root("mkdir", "-p", str(CONTAINER_FILE.parent))
        self._root(
            "dd", "if=/dev/zero", f"of={CONTAINER_FILE}", "bs=1M", "count=1",
            f"seek={gigabytes * 1024 - 1}", "status=none",
        )

        log.info("Formatting LUKS container...")
        self._root(
            "cryptsetup", "luksFormat", str(CONTAINER_FILE), "--batch-mode",
            "--cipher", "aes-xts-plain64", "--key-size", "512", "--hash", "sha512",
            input=passphrase + "\n",
        )
        self._root("cryptsetup", "luksOpen", str(CONTAINER_FILE), MAPPER_NAME, input=passphrase + "\n")
        del passphrase

        self._root("mkfs.ext4", f"/dev/mapper/{MAPPER_NAME}")
        self._root("mkdir", "-p", str(MOUNT_POINT))
        self._root("mount", f"/dev/mapper/{MAPPER_NAME}", str(MOUNT_POINT))
        self._root("chown", "root:root", str(MOUNT_POINT))
        self._root("chmod", "755", str(MOUNT_POINT))

        self._add_fstab_entry()
        self._verify()
        return True

    def _add_fstab_entry(self) -> None:
        existing = self.fstab.read_text() if self.fstab.exists() else ""
        if MAPPER_NAME in existing:
            return
        log.info("Adding encrypted mount to %s...", self.fstab)
        self._root("tee", "-a", str(self.fstab), input=fstab_line() + "\n")
        log.warning("LUKS container requires manual unlock after reboot")
        log.info("Unlock command: cryptsetup luksOpen %s %s", CONTAINER_FILE, MAPPER_NAME)

    def _verify(self) -> None:
        if self.runner.dry_run:
            return
        if not self.is_mounted():
            raise InfrabootError("Failed to mount LUKS container")
        test_file = MOUNT_POINT / "test-file"
        self._root("tee", str(test_file), input="encryption-test\n")
        if not self.runner.ok(as_root(["test", "-f", str(test_file)])):
            raise InfrabootError("LUKS container test failed")
        self._root("rm", "-f", str(test_file))
        log.info("LUKS container encryption configured; k3s data is encrypted at rest")
