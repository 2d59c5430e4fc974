# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/observers/console.py
import typer

from .events import BaseEvent

_COLORS = {
    "PhaseFailed": typer.colors.RED,
    "SecretStoreFailed": typer.colors.RED,
    "HandoffRolledBack": typer.colors.RED,
    "WaitTimedOut": typer.colors.YELLOW,
    "CleanupStepFailed": typer.colors.YELLOW,
    "PhaseSucceeded": typer.colors.GREEN,
    "HandoffCompleted": typer.colors.GREEN,
}

_HIDDEN = ("ts", "run_id", "env", "context")


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in _HIDDEN)
        typer.secho(f"[{d['ts']}] {k} env={d['env']} {{{data}}}", fg=_COLORS.get(k))
