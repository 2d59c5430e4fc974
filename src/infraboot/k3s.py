# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/k3s.py

from __future__ import annotations

import logging
import time
from typing import List

from infraboot.config.models import ClusterSettings
from infraboot.errors import InfrabootError
from infraboot.kube.kubeconfig import merge_k3s_kubeconfig
from infraboot.kube.kubectl import Kubectl
from infraboot.utils import network
from infraboot.utils.shell import CommandRunner, which
from infraboot.utils.system import as_root
from infraboot.utils.wait import wait_attempts

log = logging.getLogger("infraboot")

K3S_DISABLED = ("traefik", "servicelb")


def pick_context_name(kubectl: Kubectl, settings: ClusterSettings) -> str:
    """First of ``k3s-default``, ``k3s-default-2``, ... not already in the kubeconfig."""
    name = settings.context_prefix
    if not which("kubectl") or not settings.kubeconfig.exists():
        log.debug("Context name selected: %s (no existing config)", name)
        return name
    counter = 2
    while kubectl.context_exists(name):
        name = f"{settings.context_prefix}-{counter}"
        counter += 1
    log.debug("Context name selected: %s (avoiding conflicts)", name)
    return name


def server_args(settings: ClusterSettings) -> List[str]:
    args = ["server"]
    if settings.ha:
        args.append("--cluster-init")
    for component in K3S_DISABLED:
        args += ["--disable", component]
    return args + ["--write-kubeconfig-mode", "644"]


class K3s:
    def __init__(self, runner: CommandRunner, kubectl: Kubectl, settings: ClusterSettings):
        self.runner = runner
        self.kubectl = kubectl
        self.settings = settings

    def installed(self) -> bool:
        return which("k3s")

    def active(self) -> bool:
        return self.runner.ok(as_root(["systemctl", "is-active", "--quiet", "k3s"]))

    def install(self) -> None:
        s = self.settings
        if self.installed():
            log.info("k3s already installed, checking status...")
            if self.active():
                log.info("k3s already running")
            else:
                log.info("k3s installed but not running, starting...")
                self.runner.run(as_root(["systemctl", "start", "k3s"]))
                time.sleep(10)
            return

        log.info("Installing k3s (%s, %d node(s))", "HA-ready" if s.ha else "single node", s.nodes)
        if self.runner.dry_run:
            log.info("dry-run: would pipe %s into sh -s - %s", s.k3s_install_url, " ".join(server_args(s)))
            return
        script = network.download(s.k3s_install_url)
        argv = as_root(["sh", "-s", "-", *server_args(s)])
        self.runner.run(argv, input=script.decode("utf-8"), timeout=900)
        log.info("k3s installation completed")

    def configure_kubeconfig(self, context_name: str) -> str:
        """Merge the k3s kubeconfig and point kubectl at it. Returns the context in use."""
        s = self.settings
        log.info("Setting up kubectl context: %s", context_name)
        if self.runner.dry_run:
            self.kubectl.context = context_name
            return context_name

        in_use = merge_k3s_kubeconfig(s.k3s_kubeconfig, s.kubeconfig, context_name)
        if in_use != "default":
            self.kubectl.use_context(in_use)
        self.verify_context(in_use)
        self.kubectl.context = in_use
        return in_use

    def verify_context(self, expected: str) -> None:
        current = self.kubectl.current_context()
        if current != expected:
            raise InfrabootError(f"Context mismatch. Expected: {expected}, Got: {current or 'NONE'}")
        if not self.runner.ok(["kubectl", "--context", expected, "cluster-info"]):
            raise InfrabootError(f"kubectl cluster access failed with context: {expected}")
        log.info("kubectl context '%s' verified and working", expected)

    def wait_nodes(self) -> None:
        s = self.settings
        wait_attempts(
            lambda: self.kubectl.ok(["get", "nodes"]),
            retries=s.node_ready_retries,
            delay=s.node_ready_delay,
            description="k3s to be ready",
        )
        log.info("k3s cluster ready")

    def validate(self) -> int:
        """Cluster health: API, local-path storage, DNS. Returns the node count."""
        log.info("Validating k3s cluster...")
        self.kubectl.run(["cluster-info"])

        log.info("Waiting for local-path storage class...")
        self.kubectl.wait_created("storageclass/local-path", timeout=60)

        log.info("Waiting for DNS pods...")
        self.kubectl.wait_created("pod", namespace="kube-system", selector="k8s-app=kube-dns", timeout=60)
        self.kubectl.wait_condition("pod", namespace="kube-system", selector="k8s-app=kube-dns", timeout=120)

        nodes = self.kubectl.count("nodes")
        log.info("Cluster validation complete: %d node(s), local-path storage available", nodes)
        return nodes
