# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/tools.py

"""
Installs the CLIs the bootstrap drives.

System packages come from whichever package manager the host has; the
Kubernetes/HashiCorp tooling is downloaded as release binaries (zip or
tarball) and installed into /usr/local/bin.
"""

from __future__ import annotations

import io
import logging
import re
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from infraboot.config.models import BootstrapConfig
from infraboot.errors import InfrabootError, PrerequisiteError
from infraboot.utils import network
from infraboot.utils.shell import CommandRunner, which
from infraboot.utils.system import Platform, as_root

log = logging.getLogger("infraboot")

INSTALL_DIR = Path("/usr/local/bin")
SYSTEM_PACKAGES = ("curl", "wget", "git", "jq", "unzip")
LINUX_ONLY_PACKAGES = ("cryptsetup",)
REQUIRED_TOOLS = ("kubectl", "terraform", "helm", "flux", "jq")
BOOTSTRAP_BINARIES = ("kubectl", "terraform", "helm", "flux", "vault", "mc")
FLUX_DEFAULT_VERSION = "2.3.0"
KUBECTL_STABLE_URL = "https://dl.k8s.io/release/stable.txt"

# manager -> install command prefix
PACKAGE_MANAGERS: Dict[str, List[str]] = {
    "apt-get": ["apt-get", "install", "-y"],
    "yum": ["yum", "install", "-y"],
    "dnf": ["dnf", "install", "-y"],
    "pacman": ["pacman", "-S", "--noconfirm"],
}


@dataclass(frozen=True)
class Binary:
    name: str
    url: str
    archive: Optional[str] = None      # "zip" | "tar.gz" | None for a bare binary
    member: Optional[str] = None       # path inside the archive, defaults to name


def release_binaries(cfg: BootstrapConfig, platform: Platform, kubectl_version: str) -> List[Binary]:
    t = cfg.tools
    os_, arch = platform.os, platform.arch
    flux = (t.flux or cfg.flux.version or FLUX_DEFAULT_VERSION).lstrip("v")
    return [
        Binary("kubectl", f"https://dl.k8s.io/release/{kubectl_version}/bin/{os_}/{arch}/kubectl"),
        Binary(
            "helm",
            f"https://get.helm.sh/helm-v{t.helm.lstrip('v')}-{os_}-{arch}.tar.gz",
            archive="tar.gz",
            member=f"{os_}-{arch}/helm",
        ),
        Binary(
            "flux",
            f"https://github.com/fluxcd/flux2/releases/download/v{flux}/flux_{flux}_{os_}_{arch}.tar.gz",
            archive="tar.gz",
        ),
        Binary(
            "terraform",
            f"https://releases.hashicorp.com/terraform/{t.terraform}/terraform_{t.terraform}_{os_}_{arch}.zip",
            archive="zip",
        ),
        Binary(
            "vault",
            f"https://releases.hashicorp.com/vault/{t.vault}/vault_{t.vault}_{os_}_{arch}.zip",
            archive="zip",
        ),
        Binary("mc", f"https://dl.min.io/client/mc/release/{os_}-{arch}/mc"),
        Binary("yq", f"https://github.com/mikefarah/yq/releases/download/{t.yq}/yq_{os_}_{arch}"),
    ]


def extract(body: bytes, binary: Binary) -> bytes:
    member = binary.member or binary.name
    if binary.archive is None:
        return body
    if binary.archive == "zip":
        with zipfile.ZipFile(io.BytesIO(body)) as zf:
            return zf.read(member)
    if binary.archive == "tar.gz":
        with tarfile.open(fileobj=io.BytesIO(body), mode="r:gz") as tf:
            fh = tf.extractfile(member)
            if fh is None:
                raise InfrabootError(f"{member} not found in {binary.url}")
            return fh.read()
    raise InfrabootError(f"unsupported archive type {binary.archive}")


def tool_version(runner: CommandRunner, tool: str) -> str:
    argv = {
        "kubectl": ["kubectl", "version", "--client"],
        "terraform": ["terraform", "version"],
        "flux": ["flux", "version", "--client"],
        "helm": ["helm", "version", "--short"],
    }.get(tool, [tool, "--version"])
    out = runner.output(argv, check=False)
    return out.splitlines()[0].strip() if out else "unknown"


def installed_flux_version(runner: CommandRunner) -> Optional[str]:
    """``flux version --client`` -> ``2.3.0``."""
    out = runner.output(["flux", "version", "--client"], check=False)
    match = re.search(r"v?(\d+\.\d+\.\d+)", out)
    return match.group(1) if match else None


class ToolInstaller:
    def __init__(
        self,
        runner: CommandRunner,
        cfg: BootstrapConfig,
        platform: Platform,
        *,
        install_dir: Path = INSTALL_DIR,
        fetch: Callable[..., bytes] = network.download,
    ):
        self.runner = runner
        self.cfg = cfg
        self.platform = platform
        self.install_dir = install_dir
        self.fetch = fetch

    # ------------------------- system packages -------------------------

    def package_manager(self) -> Optional[str]:
        return next((pm for pm in PACKAGE_MANAGERS if which(pm)), None)

    def install_system_packages(self, packages: Sequence[str] = SYSTEM_PACKAGES) -> List[str]:
        wanted = list(packages)
        if self.platform.os == "linux":
            wanted += list(LINUX_ONLY_PACKAGES)
        missing = [p for p in wanted if not which(p)]
        if not missing:
            log.info("System packages already installed")
            return []

        pm = self.package_manager()
        if pm is None:
            raise PrerequisiteError(f"No supported package manager found to install: {', '.join(missing)}")
        if pm == "apt-get":
            self.runner.run(as_root(["apt-get", "update", "-qq"]))
        log.info("Installing %s with %s", ", ".join(missing), pm)
        self.runner.run(as_root(PACKAGE_MANAGERS[pm] + missing), timeout=900)
        return missing

    # ------------------------- release binaries -------------------------

    def kubectl_version(self) -> str:
        if self.cfg.tools.kubectl:
            return self.cfg.tools.kubectl
        if self.runner.dry_run:
            log.info("dry-run: would resolve the kubectl version from %s", KUBECTL_STABLE_URL)
            return "stable"
        return network.download(KUBECTL_STABLE_URL).decode().strip()

    def install_binary(self, binary: Binary) -> Path:
        log.info("Installing %s...", binary.name)
        body = extract(self.fetch(binary.url), binary)
        target = self.install_dir / binary.name
        with tempfile.TemporaryDirectory(prefix="infraboot-tool-") as tmp:
            staged = Path(tmp) / binary.name
            staged.write_bytes(body)
            self.runner.run(as_root(["install", "-m", "0755", str(staged), str(target)]))
        log.info("%s installed to %s", binary.name, target)
        return target

    def install_all(self) -> List[str]:
        """Install every missing release binary. Returns the names installed."""
        pending = [name for name in ("kubectl", "helm", "flux", "terraform", "vault", "mc", "yq") if not which(name)]
        if not pending:
            log.info("All tools already installed")
            return []
        kubectl_version = self.kubectl_version() if "kubectl" in pending else "unused"
        installed = []
        for binary in release_binaries(self.cfg, self.platform, kubectl_version):
            if binary.name not in pending:
                continue
            if self.runner.dry_run:
                log.info("dry-run: would install %s from %s", binary.name, binary.url)
                continue
            self.install_binary(binary)
            installed.append(binary.name)
        return installed

    # ------------------------- verification -------------------------

    def verify(self, tools: Sequence[str] = REQUIRED_TOOLS) -> Dict[str, str]:
        versions: Dict[str, str] = {}
        missing = []
        for tool in tools:
            if not which(tool):
                log.error("  %s missing", tool)
                missing.append(tool)
                continue
            versions[tool] = tool_version(self.runner, tool)
            log.info("  %s available (%s)", tool, versions[tool])
        if missing and not self.runner.dry_run:
            raise PrerequisiteError(f"Missing required tools: {', '.join(missing)}")
        return versions
