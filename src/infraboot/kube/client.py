# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/kube/client.py
from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from infraboot.errors import InfrabootError


def _apps_api(kube_context: Optional[str], kubeconfig: Optional[Path]) -> client.AppsV1Api:
    try:
        config.load_kube_config(
            config_file=str(kubeconfig) if kubeconfig else None,
            context=kube_context,
        )
    except config.ConfigException as exc:
        raise InfrabootError(f"cannot load kubeconfig (context={kube_context}): {exc}") from exc
    return client.AppsV1Api()


def wait_for_deployment_available(
    name: str,
    namespace: str,
    timeout_seconds: int = 120,
    kube_context: Optional[str] = None,
    kubeconfig: Optional[Path] = None,
    interval: float = 2,
) -> None:
    """
    Wait until a restarted Deployment has finished rolling out: the
    observed generation caught up and every replica is updated and available.

    API and kubeconfig failures surface as InfrabootError, like failed
    kubectl calls do.
    """
    api = _apps_api(kube_context, kubeconfig)

    end = time.time() + timeout_seconds
    while time.time() < end:
        try:
            d = api.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as exc:
            raise InfrabootError(
                f"reading deployment/{name} in {namespace} failed: {exc.status} {exc.reason}"
            ) from exc
        desired = d.spec.replicas or 0
        st = d.status
        if (
            (st.observed_generation or 0) >= (d.metadata.generation or 0)
            and (st.updated_replicas or 0) >= desired
            and (st.available_replicas or 0) >= desired
        ):
            return
        time.sleep(interval)

    raise TimeoutError(f"Timeout waiting for deployment/{name} in {namespace} to become available")
