# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/kube/kubectl.py

from __future__ import annotations

import base64
import json
import logging
import subprocess
import time
from pathlib import Path
from typing import Any, Optional, Sequence

from infraboot.errors import CommandError
from infraboot.utils.shell import CommandRunner

log = logging.getLogger("infraboot")


class Kubectl:
    """
    kubectl runner executed locally against the bootstrap cluster.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        context: Optional[str] = None,
        kubeconfig: Optional[Path] = None,
    ):
        self.runner = runner
        self.context = context
        self.kubeconfig = kubeconfig

    def _base(self) -> list[str]:
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd += ["--kubeconfig", str(self.kubeconfig)]
        if self.context:
            cmd += ["--context", self.context]
        return cmd

    def run(self, args: Sequence[str], **kwargs) -> subprocess.CompletedProcess:
        return self.runner.run(self._base() + list(args), **kwargs)

    def ok(self, args: Sequence[str], **kwargs) -> bool:
        kwargs["check"] = False
        return self.run(args, **kwargs).returncode == 0

    def output(self, args: Sequence[str], **kwargs) -> str:
        return (self.run(args, **kwargs).stdout or "").strip()

    @staticmethod
    def _ns(namespace: Optional[str]) -> list[str]:
        return ["-n", namespace] if namespace else []

    # ------------------------- reads -------------------------

    def get_json(self, kind: str, name: Optional[str] = None, *, namespace: Optional[str] = None,
                 selector: Optional[str] = None, all_namespaces: bool = False) -> Optional[dict]:
        args = ["get", kind] + ([name] if name else [])
        args += ["-A"] if all_namespaces else self._ns(namespace)
        if selector:
            args += ["-l", selector]
        cp = self.run(args + ["-o", "json"], check=False)
        if cp.returncode != 0 or not cp.stdout:
            log.debug("[kubectl] get %s/%s: rc=%d %s", kind, name or "*", cp.returncode, (cp.stderr or "").strip())
            return None
        return json.loads(cp.stdout)

    def exists(self, kind: str, name: str, *, namespace: Optional[str] = None) -> bool:
        return self.ok(["get", kind, name] + self._ns(namespace))

    def jsonpath(self, kind: str, name: Optional[str], path: str, *, namespace: Optional[str] = None,
                 selector: Optional[str] = None) -> str:
        args = ["get", kind] + ([name] if name else []) + self._ns(namespace)
        if selector:
            args += ["-l", selector]
        cp = self.run(args + ["-o", f"jsonpath={path}"], check=False)
        return (cp.stdout or "").strip() if cp.returncode == 0 else ""

    def first_pod_name(self, namespace: str, selector: str) -> Optional[str]:
        name = self.jsonpath("pods", None, "{.items[0].metadata.name}", namespace=namespace, selector=selector)
        return name or None

    def pod_ready(self, namespace: str, name: str) -> bool:
        status = self.jsonpath(
            "pod", name, '{.status.conditions[?(@.type=="Ready")].status}', namespace=namespace,
        )
        return status == "True"

    def condition_status(self, kind: str, name: str, namespace: str, index: int = 0) -> str:
        return self.jsonpath(kind, name, f"{{.status.conditions[{index}].status}}", namespace=namespace)

    def get_yaml(self, kind: str, name: str, *, namespace: Optional[str] = None) -> str:
        return self.output(["get", kind, name] + self._ns(namespace) + ["-o", "yaml"])

    def secret_value(self, name: str, key: str, *, namespace: str) -> Optional[str]:
        escaped = key.replace(".", "\\.")
        raw = self.jsonpath("secret", name, f"{{.data.{escaped}}}", namespace=namespace)
        if not raw:
            return None
        return base64.b64decode(raw).decode("utf-8", errors="replace")

    def count(self, kind: str, *, namespace: Optional[str] = None, all_namespaces: bool = False) -> int:
        args = ["get", kind, "--no-headers"] + (["-A"] if all_namespaces else self._ns(namespace))
        cp = self.run(args, check=False)
        if cp.returncode != 0:
            return 0
        return len([line for line in (cp.stdout or "").splitlines() if line.strip()])

    def logs(self, namespace: str, pod: str) -> str:
        cp = self.run(["logs", "-n", namespace, pod], check=False)
        return cp.stdout or ""

    # ------------------------- waits -------------------------

    def wait_condition(
        self,
        target: str,
        *,
        condition: str = "Ready",
        namespace: Optional[str] = None,
        selector: Optional[str] = None,
        timeout: int = 120,
        check: bool = True,
    ) -> bool:
        """
        Wrapper around:
        kubectl wait --for=condition=<condition> <target> [-l selector] --timeout=<n>s
        """
        args = ["wait", f"--for=condition={condition}", target]
        if selector:
            args += ["-l", selector]
        args += self._ns(namespace) + [f"--timeout={timeout}s"]
        return self.run(args, check=check).returncode == 0

    def wait_created(
        self,
        target: str,
        *,
        namespace: Optional[str] = None,
        selector: Optional[str] = None,
        timeout: int = 60,
    ) -> None:
        args = ["wait", "--for=create", target]
        if selector:
            args += ["-l", selector]
        args += self._ns(namespace) + [f"--timeout={timeout}s"]
        self.run(args)

    # ------------------------- writes -------------------------

    def apply_manifest(self, manifest: str) -> None:
        self.run(["apply", "-f", "-"], input=manifest)

    def ensure_namespace(self, namespace: str) -> None:
        manifest = self.output(["create", "namespace", namespace, "--dry-run=client", "-o", "yaml"])
        self.apply_manifest(manifest)

    def apply_secret(self, name: str, namespace: str, data: dict[str, str]) -> None:
        """Idempotent ``create secret generic`` (dry-run rendered, then applied)."""
        for value in data.values():
            self.runner.mask(value)
        args = ["create", "secret", "generic", name, f"--namespace={namespace}"]
        args += [f"--from-literal={k}={v}" for k, v in data.items()]
        args += ["--dry-run=client", "-o", "yaml"]
        manifest = self.output(args)
        self.apply_manifest(manifest)

    def patch_merge(self, kind: str, name: str, patch: dict[str, Any], *, namespace: Optional[str] = None) -> None:
        self.run(["patch", kind, name] + self._ns(namespace) + ["--type=merge", f"-p={json.dumps(patch)}"])

    def rollout_restart(self, deployment: str, namespace: str) -> None:
        self.run(["rollout", "restart", f"deployment/{deployment}", "-n", namespace])

    def delete(self, kind: str, name: str, *, namespace: Optional[str] = None) -> bool:
        return self.ok(["delete", kind, name] + self._ns(namespace) + ["--ignore-not-found=true"])

    def exec(
        self,
        namespace: str,
        pod: str,
        command: Sequence[str],
        *,
        input: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        args = ["exec"] + (["-i"] if input is not None else []) + [pod, "-n", namespace, "--"]
        return self.run(args + list(command), input=input, check=check)

    # ------------------------- kubeconfig -------------------------

    def current_context(self) -> Optional[str]:
        cp = self.runner.run(["kubectl", "config", "current-context"], check=False)
        return (cp.stdout or "").strip() or None

    def context_exists(self, name: str) -> bool:
        return self.runner.ok(["kubectl", "config", "get-contexts", name])

    def use_context(self, name: str) -> None:
        self.runner.run(["kubectl", "config", "use-context", name])
        self.context = name

    def context_cluster_user(self, name: str) -> tuple[str, str]:
        def _field(f: str) -> str:
            return self.runner.output(
                ["kubectl", "config", "view", "-o", f"jsonpath={{.contexts[?(@.name=='{name}')].context.{f}}}"],
                check=False,
            )
        return _field("cluster"), _field("user")

    def delete_context(self, name: str) -> bool:
        cluster, user = self.context_cluster_user(name)
        removed = self.runner.ok(["kubectl", "config", "delete-context", name])
        if cluster:
            self.runner.ok(["kubectl", "config", "delete-cluster", cluster])
        if user:
            self.runner.ok(["kubectl", "config", "delete-user", user])
        return removed


class PortForwards:
    """
    Background ``kubectl port-forward`` processes owned by a run.
    ``stop_all`` is registered on the cleanup stack.
    """

    def __init__(self, kubectl: Kubectl, *, grace_seconds: float = 5):
        self.kubectl = kubectl
        self.grace_seconds = grace_seconds
        self._procs: list[tuple[str, subprocess.Popen]] = []

    def start(self, namespace: str, target: str, ports: str, *, settle: float = 5) -> Optional[subprocess.Popen]:
        label = f"{namespace}/{target} {ports}"
        if self.kubectl.runner.dry_run:
            log.info("[port-forward] dry-run: skipped %s", label)
            return None
        argv = self.kubectl._base() + ["port-forward", "-n", namespace, target, ports]
        log.debug("[port-forward] $ %s", " ".join(argv))
        proc = subprocess.Popen(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        self._procs.append((label, proc))
        log.info("[port-forward] started %s (pid %s)", label, proc.pid)
        if settle:
            time.sleep(settle)
        if proc.poll() is not None:
            raise CommandError(argv, proc.returncode or 1, "", f"port-forward {label} exited early")
        return proc

    def stop_all(self) -> int:
        stopped = 0
        while self._procs:
            label, proc = self._procs.pop()
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=self.grace_seconds)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                stopped += 1
            log.info("[port-forward] stopped %s (pid %s)", label, proc.pid)
        return stopped

    def __len__(self) -> int:
        return len(self._procs)
