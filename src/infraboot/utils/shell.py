# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/utils/shell.py

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from infraboot.errors import CommandError, PrerequisiteError
from infraboot.logging.log import TRACE

log = logging.getLogger("infraboot")


@dataclass
class CommandRunner:
    """
    Thin wrapper around subprocess.run for the external CLIs we drive
    (kubectl, terraform, flux, mc, k3s, ...).

    - every command is logged at DEBUG, output at TRACE
    - registered secret values are masked in log lines
    - dry_run logs the command and returns rc=0 without executing
    - testable by monkeypatching subprocess.run
    """

    dry_run: bool = False
    env: Optional[dict[str, str]] = None
    label: Optional[str] = None
    _secrets: set[str] = field(default_factory=set, repr=False)

    def mask(self, *values: Optional[str]) -> None:
        for v in values:
            if v and len(v) >= 4:
                self._secrets.add(v)

    def redact(self, text: str) -> str:
        for s in self._secrets:
            text = text.replace(s, "****")
        return text

    def _merged_env(self, env: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        if not self.env and not env:
            return None
        merged = dict(os.environ)
        merged.update(self.env or {})
        merged.update(env or {})
        return merged

    def run(
        self,
        argv: Sequence[str],
        *,
        input: Optional[str] = None,
        cwd: str | os.PathLike | None = None,
        env: Optional[dict[str, str]] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        argv = [str(a) for a in argv]
        label = self.label or argv[0]
        cmd_str = self.redact(" ".join(argv))
        log.debug("[%s] $ %s", label, cmd_str)

        if self.dry_run:
            log.info("[%s] dry-run: skipped %s", label, cmd_str)
            return subprocess.CompletedProcess(args=argv, returncode=0, stdout="", stderr="")

        start = time.time()
        try:
            result = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                check=False,
                cwd=cwd,
                env=self._merged_env(env),
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandError(argv, 127, "", f"{argv[0]}: command not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(argv, 124, "", f"timed out after {timeout}s") from exc

        duration = time.time() - start
        if result.stdout:
            log.log(TRACE, "[%s][stdout]\n%s", label, self.redact(result.stdout.rstrip()))
        if result.stderr:
            log.log(TRACE, "[%s][stderr]\n%s", label, self.redact(result.stderr.rstrip()))
        log.debug("[%s][exit %d] (%.2fs)", label, result.returncode, duration)

        if check and result.returncode != 0:
            raise CommandError(
                argv,
                result.returncode,
                self.redact(result.stdout or ""),
                self.redact(result.stderr or ""),
            )
        return result

    def ok(self, argv: Sequence[str], **kwargs) -> bool:
        kwargs["check"] = False
        return self.run(argv, **kwargs).returncode == 0

    def output(self, argv: Sequence[str], **kwargs) -> str:
        return (self.run(argv, **kwargs).stdout or "").strip()


def which(tool: str) -> bool:
    return shutil.which(tool) is not None


def require_tools(tools: Iterable[str]) -> None:
    missing = [t for t in tools if not which(t)]
    if missing:
        raise PrerequisiteError(f"Missing required tools: {', '.join(missing)}")
