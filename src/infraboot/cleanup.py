# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/cleanup.py

"""
Teardown of everything a bootstrap run leaves on the machine: port-forwards,
the k3s kubeconfig context, k3s itself, installed binaries and work dirs.

Individual failures are logged and teardown carries on; ``verify`` reports
what is still there.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from infraboot.errors import CommandError
from infraboot.kube.kubectl import Kubectl
from infraboot.tools import BOOTSTRAP_BINARIES, INSTALL_DIR
from infraboot.utils.shell import CommandRunner, which
from infraboot.utils.system import as_root

log = logging.getLogger("infraboot")

K3S_CONTEXT_PREFIX = "k3s-default"
K3S_UNINSTALL = "k3s-uninstall.sh"


class Teardown:
    def __init__(
        self,
        runner: CommandRunner,
        kubectl: Kubectl,
        *,
        directories: Sequence[Path],
        install_dir: Path = INSTALL_DIR,
        binaries: Iterable[str] = BOOTSTRAP_BINARIES,
    ):
        self.runner = runner
        self.kubectl = kubectl
        self.directories = [Path(d) for d in directories]
        self.install_dir = Path(install_dir)
        self.binaries = tuple(binaries)

    def stop_processes(self) -> None:
        log.info("Stopping running processes...")
        if self.runner.ok(["pkill", "-f", "kubectl port-forward"]):
            log.debug("kubectl port-forward processes killed")
        else:
            log.debug("No kubectl port-forward processes found")

    def remove_kube_context(self) -> Optional[str]:
        log.info("Cleaning up kubectl config...")
        current = self.kubectl.current_context()
        if not current or not current.startswith(K3S_CONTEXT_PREFIX):
            log.debug("Current context %r is not k3s-related, skipping", current)
            return None
        if self.kubectl.delete_context(current):
            log.info("Removed context: %s", current)
        return current

    def k3s_active(self) -> bool:
        return self.runner.ok(as_root(["systemctl", "is-active", "--quiet", "k3s"]))

    def remove_k3s(self) -> None:
        log.info("Removing k3s cluster...")
        try:
            if self.k3s_active():
                self.runner.run(as_root(["systemctl", "stop", "k3s"]))
                log.info("k3s service stopped")
            if which(K3S_UNINSTALL) or self.runner.dry_run:
                self.runner.run(as_root([K3S_UNINSTALL]), timeout=600)
                log.info("k3s uninstalled")
            else:
                log.info("k3s uninstall script not found (may not be installed)")
        except CommandError as exc:
            log.error("k3s removal failed: %s", exc)

    def remove_tools(self) -> List[str]:
        log.info("Removing installed tools...")
        removed = []
        for tool in self.binaries:
            path = self.install_dir / tool
            if not path.exists():
                log.debug("%s not found in %s", tool, self.install_dir)
                continue
            if self.runner.ok(as_root(["rm", "-f", str(path)])):
                removed.append(tool)
                log.info("  %s removed", tool)
            else:
                log.error("  failed to remove %s", path)
        return removed

    def remove_directories(self) -> List[Path]:
        log.info("Removing bootstrap directories...")
        removed = []
        for d in self.directories:
            if not d.is_dir():
                log.debug("%s not found", d)
                continue
            if self.runner.dry_run:
                log.info("dry-run: would remove %s", d)
                continue
            try:
                shutil.rmtree(d)
            except OSError as exc:
                log.error("  failed to remove %s: %s", d, exc)
                continue
            removed.append(d)
            log.info("  %s removed", d)
        return removed

    def verify(self) -> List[str]:
        issues = []
        if self.k3s_active():
            issues.append("k3s service still running")
        issues += [f"{t} still present in {self.install_dir}" for t in self.binaries if (self.install_dir / t).exists()]
        issues += [f"{d} still exists" for d in self.directories if d.is_dir()]
        for issue in issues:
            log.warning("  %s", issue)
        return issues

    def run(self) -> List[str]:
        """Full teardown; returns the leftover issues (empty when clean)."""
        self.stop_processes()
        self.remove_kube_context()
        self.remove_k3s()
        self.remove_tools()
        self.remove_directories()
        if self.runner.dry_run:
            return []
        log.info("Verifying cleanup...")
        issues = self.verify()
        if not issues:
            log.info("All components successfully removed")
        return issues
