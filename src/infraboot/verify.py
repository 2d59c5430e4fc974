# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/verify.py

"""
Post-bootstrap verification.

Every check is a named callable returning a bool. Required checks that fail
make the whole verification fail; optional ones only count as warnings.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Sequence, Tuple

from infraboot.config.models import BootstrapConfig
from infraboot.credentials import leftover_secrets
from infraboot.errors import InfrabootError
from infraboot.kube.kubectl import Kubectl
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import CheckResult

log = logging.getLogger("infraboot")

PASS = "PASS"
FAIL = "FAIL"
WARN = "WARN"

HINTS = (
    "Check pod status: kubectl get pods -A",
    "View logs: kubectl logs -n <namespace> <pod-name>",
    "Flux sync: flux get sources git && flux get kustomizations",
    "Vault: kubectl exec -n vault vault-0 -- vault status",
    "Secret synchronization: kubectl get externalsecrets -A",
)


class CheckRunner:
    def __init__(self, bus: Optional[EventBus] = None, run_ctx: Optional[Dict[str, Any]] = None):
        self.bus = bus or EventBus([])
        self.run_ctx = run_ctx or {"ts": "", "run_id": "", "env": "", "context": None}
        self.results: List[Tuple[str, str, bool]] = []

    def check(self, name: str, fn: Callable[[], bool], *, optional: bool = False) -> bool:
        try:
            passed = bool(fn())
        except (InfrabootError, TimeoutError, ValueError) as exc:
            log.debug("check %r raised: %s", name, exc)
            passed = False

        if passed:
            status = PASS
            log.info("  PASS  %s", name)
        elif optional:
            status = WARN
            log.warning("  WARN  %s (optional check failed)", name)
        else:
            status = FAIL
            log.error("  FAIL  %s", name)

        self.results.append((name, status, optional))
        self.bus.emit(CheckResult(name=name, status=status, optional=optional, **self.run_ctx))
        return passed

    def _count(self, status: str) -> int:
        return sum(1 for _, s, _ in self.results if s == status)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return self._count(PASS)

    @property
    def failed(self) -> int:
        return self._count(FAIL)

    @property
    def warnings(self) -> int:
        return self._count(WARN)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def success_rate(self) -> int:
        return int(self.passed * 100 / self.total) if self.total else 0

    def failures(self) -> List[str]:
        return [name for name, s, _ in self.results if s == FAIL]

    def summary(self) -> str:
        return (
            f"total={self.total} passed={self.passed} failed={self.failed} "
            f"warnings={self.warnings} success={self.success_rate}%"
        )


# ------------------------- kubectl helpers -------------------------

def _items(kubectl: Kubectl, kind: str, **kwargs) -> Optional[list]:
    data = kubectl.get_json(kind, **kwargs)
    return None if data is None else data.get("items", [])


def _condition(obj: dict, ctype: str = "Ready") -> Optional[str]:
    for c in obj.get("status", {}).get("conditions", []) or []:
        if c.get("type") == ctype:
            return c.get("status")
    return None


def pods_running(kubectl: Kubectl, namespace: str, selector: Optional[str] = None,
                 allowed: Sequence[str] = ("Running",)) -> bool:
    """At least one pod matched and every one of them is in an allowed phase."""
    pods = _items(kubectl, "pods", namespace=namespace, selector=selector)
    if not pods:
        return False
    bad = [p["metadata"]["name"] for p in pods if p.get("status", {}).get("phase") not in allowed]
    if bad:
        log.debug("pods not running in %s: %s", namespace, ", ".join(bad))
    return not bad


def all_ready(kubectl: Kubectl, kind: str, **kwargs) -> bool:
    items = _items(kubectl, kind, **kwargs)
    return bool(items) and all(_condition(i) == "True" for i in items)


def pods_in_phase(kubectl: Kubectl, phase: str) -> int:
    cp = kubectl.run(["get", "pods", "-A", f"--field-selector=status.phase={phase}", "--no-headers"], check=False)
    if cp.returncode != 0:
        raise InfrabootError(f"cannot list pods: {(cp.stderr or '').strip()}")
    return len([line for line in (cp.stdout or "").splitlines() if line.strip()])


# ------------------------- suites -------------------------

class Verifier:
    def __init__(
        self,
        kubectl: Kubectl,
        config: BootstrapConfig,
        checks: CheckRunner,
        *,
        environ: Optional[MutableMapping[str, str]] = None,
    ):
        self.kubectl = kubectl
        self.config = config
        self.checks = checks
        self.environ = environ

    def kubernetes(self) -> None:
        k = self.kubectl
        self.checks.check("Kubernetes API server", lambda: k.ok(["cluster-info", "--request-timeout=10s"]))
        self.checks.check("All nodes ready", lambda: all_ready(k, "nodes"))
        self.checks.check(
            "System pods running",
            lambda: pods_running(k, "kube-system", allowed=("Running", "Succeeded")),
        )

    def flux(self) -> None:
        k, f = self.kubectl, self.config.flux
        self.checks.check("Flux system pods", lambda: pods_running(k, f.namespace))
        self.checks.check(
            "Git repository source",
            lambda: _condition(k.get_json("gitrepository", f.source_name, namespace=f.namespace) or {}) == "True",
        )
        self.checks.check(
            "Kustomization ready",
            lambda: _condition(k.get_json("kustomization", f.source_name, namespace=f.namespace) or {}) == "True",
        )

    def _vault_unsealed(self) -> bool:
        v = self.config.vault
        pod = self.kubectl.first_pod_name(v.namespace, v.pod_selector)
        if not pod:
            return False
        cp = self.kubectl.exec(
            v.namespace, pod, ["env", "VAULT_SKIP_VERIFY=true", "vault", "status", "-format=json"], check=False,
        )
        if not cp.stdout:
            return False
        status = json.loads(cp.stdout)
        return status.get("initialized") is True and status.get("sealed") is False

    def vault(self) -> None:
        v = self.config.vault
        self.checks.check("Vault pods running", lambda: pods_running(self.kubectl, v.namespace, v.pod_selector))
        self.checks.check("Vault unsealed and ready", self._vault_unsealed)

    def minio(self) -> None:
        m = self.config.minio
        self.checks.check("MinIO pods running", lambda: pods_running(self.kubectl, m.namespace, "app=minio"))

    def external_secrets(self) -> None:
        k = self.kubectl
        ns = "external-secrets-system"
        present = self.checks.check(
            "External Secrets Operator installed", lambda: k.exists("namespace", ns), optional=True,
        )
        if not present:
            return
        self.checks.check(
            "External Secrets operator pods",
            lambda: pods_running(k, ns, "app.kubernetes.io/name=external-secrets"),
        )
        self.checks.check(
            "ClusterSecretStore configured", lambda: k.exists("clustersecretstore", "vault-backend"), optional=True,
        )
        self.checks.check(
            "External secrets syncing", lambda: all_ready(k, "externalsecrets", all_namespaces=True), optional=True,
        )

    def ingress(self) -> None:
        k = self.kubectl
        ns = "ingress-nginx"
        if self.checks.check("Ingress nginx namespace", lambda: k.exists("namespace", ns), optional=True):
            self.checks.check(
                "Ingress controller pods",
                lambda: pods_running(k, ns, "app.kubernetes.io/component=controller"),
                optional=True,
            )

    def storage(self) -> None:
        k = self.kubectl
        self.checks.check("Storage class available", lambda: k.exists("storageclass", "local-path"))

        def _pvcs_bound() -> bool:
            pvcs = _items(k, "pvc", all_namespaces=True)
            return pvcs is not None and all(p.get("status", {}).get("phase") == "Bound" for p in pvcs)

        self.checks.check("Persistent volume claims bound", _pvcs_bound, optional=True)

    def resources(self) -> None:
        k = self.kubectl
        self.checks.check("No pods in pending state", lambda: pods_in_phase(k, "Pending") == 0)
        self.checks.check("No pods failing", lambda: pods_in_phase(k, "Failed") == 0)

    def zero_secrets(self) -> None:
        f = self.config.flux

        def _secret_ref() -> bool:
            ref = self.kubectl.jsonpath("gitrepository", f.source_name, "{.spec.secretRef.name}", namespace=f.namespace)
            log.debug("GitRepository %s secretRef=%r", f.source_name, ref)
            return ref == f.handoff_secret

        def _environment_clean() -> bool:
            names = leftover_secrets(self.environ)
            if names:
                log.warning("Credentials still exported: %s", ", ".join(names))
            return not names

        self.checks.check("Flux uses External-Secrets-managed git auth", _secret_ref, optional=True)
        self.checks.check("No credentials left in environment", _environment_clean, optional=True)


SUITES: Dict[str, str] = {
    "kubernetes": "Kubernetes cluster",
    "flux": "Flux GitOps",
    "vault": "Vault",
    "minio": "MinIO",
    "external_secrets": "External Secrets",
    "ingress": "Ingress",
    "storage": "Storage",
    "resources": "Resources",
    "zero_secrets": "Zero-secrets architecture",
}


def run_verification(verifier: Verifier, suites: Optional[Sequence[str]] = None) -> CheckRunner:
    names = list(suites) if suites else list(SUITES)
    unknown = [n for n in names if n not in SUITES]
    if unknown:
        raise InfrabootError(f"unknown verification suite(s): {', '.join(unknown)}")

    for name in names:
        log.info("Verifying %s...", SUITES[name])
        getattr(verifier, name)()

    checks = verifier.checks
    log.info("Verification: %s", checks.summary())
    if not checks.ok:
        log.error("Failed checks: %s", ", ".join(checks.failures()))
        for hint in HINTS:
            log.info("  hint: %s", hint)
    return checks
