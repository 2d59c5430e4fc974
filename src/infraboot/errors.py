# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/errors.py

from __future__ import annotations

from typing import Sequence


class InfrabootError(RuntimeError):
    pass


class ConfigError(InfrabootError):
    pass


class PrerequisiteError(InfrabootError):
    pass


class CredentialError(InfrabootError):
    pass


class CriticalWriteError(InfrabootError):
    """A secret that exists only in memory could not be persisted."""


class HandoffError(InfrabootError):
    pass


class PhaseError(InfrabootError):
    def __init__(self, phase: str, message: str, report=None):
        super().__init__(f"phase '{phase}' failed: {message}")
        self.phase = phase
        self.report = report


class CommandError(InfrabootError):
    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        detail = (self.stderr or self.stdout).strip()
        msg = f"{self.argv[0] if self.argv else '<cmd>'} failed (rc={returncode})"
        if detail:
            msg += f": {detail.splitlines()[-1]}"
        super().__init__(msg)
