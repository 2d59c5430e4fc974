# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/kube/kubeconfig.py

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from infraboot.errors import ConfigError

log = logging.getLogger("infraboot")


def _load(path: Path) -> dict:
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} is not a kubeconfig")
    return data


def _replace_named(entries: list, new: dict) -> list:
    return [e for e in entries if e.get("name") != new["name"]] + [new]


def rename_single(config: dict, context_name: str) -> dict:
    """
    Rename the single context/cluster/user of a k3s kubeconfig to
    ``<name>``, ``<name>-cluster`` and ``<name>-user``.
    """
    try:
        ctx = config["contexts"][0]
        cluster = config["clusters"][0]
        user = config["users"][0]
    except (KeyError, IndexError) as exc:
        raise ConfigError("k3s kubeconfig has no context/cluster/user") from exc

    cluster_name = f"{context_name}-cluster"
    user_name = f"{context_name}-user"

    ctx["name"] = context_name
    ctx.setdefault("context", {})
    ctx["context"]["cluster"] = cluster_name
    ctx["context"]["user"] = user_name
    cluster["name"] = cluster_name
    user["name"] = user_name
    config["current-context"] = context_name
    return config


def merge_k3s_kubeconfig(source: Path, target: Path, context_name: str) -> str:
    """
    Merge the k3s kubeconfig into ``target`` under ``context_name`` and make
    it the current context. Returns the context name actually in use: when
    no kubeconfig exists yet the k3s file is copied as-is and keeps its
    ``default`` context.
    """
    k3s = _load(source)
    target.parent.mkdir(parents=True, exist_ok=True)

    if not target.exists():
        target.write_text(yaml.safe_dump(k3s, sort_keys=False))
        os.chmod(target, 0o600)
        name = k3s.get("current-context") or "default"
        log.info("[kubeconfig] created %s with k3s cluster (context %s)", target, name)
        return name

    renamed = rename_single(k3s, context_name)
    existing = _load(target)
    existing.setdefault("apiVersion", "v1")
    existing.setdefault("kind", "Config")

    for section in ("clusters", "users", "contexts"):
        merged = existing.get(section) or []
        for entry in renamed.get(section) or []:
            merged = _replace_named(merged, entry)
        existing[section] = merged
    existing["current-context"] = context_name

    tmp = target.with_suffix(".tmp")
    tmp.write_text(yaml.safe_dump(existing, sort_keys=False))
    os.chmod(tmp, 0o600)
    tmp.replace(target)
    log.info("[kubeconfig] merged k3s cluster as '%s' context", context_name)
    return context_name
