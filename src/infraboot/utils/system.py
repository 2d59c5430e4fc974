# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/utils/system.py

from __future__ import annotations

import functools
import logging
import os
import platform as _platform
from dataclasses import dataclass
from typing import List, Optional, Sequence

from infraboot.errors import PrerequisiteError

log = logging.getLogger("infraboot")

_ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
}

_SUPPORTED_OS = ("linux", "darwin")


@dataclass(frozen=True)
class Platform:
    os: str
    arch: str

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}"


def normalize(machine: str, system: str) -> Platform:
    arch = _ARCH_MAP.get(machine.lower())
    if arch is None:
        raise PrerequisiteError(f"Unsupported architecture: {machine}")
    os_name = system.lower()
    if os_name not in _SUPPORTED_OS:
        raise PrerequisiteError(f"Unsupported operating system: {system}")
    return Platform(os=os_name, arch=arch)


@functools.lru_cache(maxsize=1)
def detect_platform(machine: Optional[str] = None, system: Optional[str] = None) -> Platform:
    """Detect (and cache) the host OS/arch in the naming used by release artifacts."""
    detected = normalize(machine or _platform.machine(), system or _platform.system())
    log.info("Detected: %s", detected)
    return detected


def is_root() -> bool:
    return os.geteuid() == 0


def as_root(argv: Sequence[str]) -> List[str]:
    """Prefix ``argv`` with sudo unless we already run as root."""
    return list(argv) if is_root() else ["sudo", *argv]
