# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/phases/runner.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from infraboot.errors import ConfigError, PhaseError
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import (
    CleanupStarted,
    CleanupStepFailed,
    PhaseFailed,
    PhaseSkipped,
    PhaseStarted,
    PhaseSucceeded,
    RunStarted,
    RunStopped,
    RunSummary,
)

log = logging.getLogger("infraboot")

OK = "OK"
FAILED = "FAILED"
SKIPPED = "SKIPPED"
WARNED = "WARNED"


@dataclass
class Phase:
    name: str
    run: Callable[[Any], Optional[str]]
    description: str = ""
    critical: bool = True


@dataclass
class PhaseResult:
    name: str
    status: str                 # "OK" | "FAILED" | "SKIPPED" | "WARNED"
    duration_s: float = 0.0
    error: Optional[str] = None
    message: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, repr=False, compare=False)


@dataclass
class RunReport:
    results: List[PhaseResult] = field(default_factory=list)
    stopped_after: Optional[str] = None
    cleanup_errors: List[str] = field(default_factory=list)

    def add(self, result: PhaseResult) -> None:
        self.results.append(result)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def ok(self) -> bool:
        return self._count(FAILED) == 0

    @property
    def failed_phase(self) -> Optional[str]:
        return next((r.name for r in self.results if r.status == FAILED), None)

    def summary(self) -> str:
        return (
            f"OK={self._count(OK)} FAILED={self._count(FAILED)} "
            f"SKIPPED={self._count(SKIPPED)} WARNED={self._count(WARNED)}"
        )


class CleanupStack:
    """
    LIFO cleanup callbacks, the equivalent of stacking EXIT traps.
    Each callback runs at most once.
    """

    def __init__(self):
        self._steps: List[tuple[str, Callable[[], Any]]] = []

    def push(self, label: str, fn: Callable[[], Any]) -> None:
        self._steps.append((label, fn))

    def __len__(self) -> int:
        return len(self._steps)

    def run(self, on_error: Optional[Callable[[str, Exception], None]] = None) -> List[str]:
        errors: List[str] = []
        while self._steps:
            label, fn = self._steps.pop()
            try:
                log.debug("[cleanup] %s", label)
                fn()
            except Exception as exc:
                log.warning("[cleanup] %s failed: %s", label, exc)
                errors.append(f"{label}: {exc}")
                if on_error:
                    on_error(label, exc)
        return errors


class PhaseRunner:
    """
    Runs an ordered list of phases against a shared context.

    - stops at the first failing critical phase, remaining phases are SKIPPED
    - non-critical failures are reported as WARNED and the run continues
    - ``stop_after`` ends the run successfully after the named phase
    - ``ctx.cleanup`` runs unconditionally, including on KeyboardInterrupt
    """

    def __init__(self, bus: EventBus, run_ctx: Dict[str, Any]):
        self.bus = bus
        self.run_ctx = run_ctx

    def run(
        self,
        phases: Sequence[Phase],
        ctx: Any,
        *,
        stop_after: Optional[str] = None,
        only: Optional[Iterable[str]] = None,
    ) -> RunReport:
        names = [p.name for p in phases]
        if stop_after is not None and stop_after not in names:
            raise ConfigError(f"Unknown phase '{stop_after}' for --stop-after (valid: {', '.join(names)})")
        selected = set(only) if only is not None else None
        if selected is not None and selected - set(names):
            raise ConfigError(f"Unknown phases: {', '.join(sorted(selected - set(names)))}")

        report = RunReport()
        failure: Optional[BaseException] = None
        failed_name: Optional[str] = None

        self.bus.emit(RunStarted(phases=names, **self.run_ctx))
        try:
            for index, phase in enumerate(phases):
                if selected is not None and phase.name not in selected:
                    report.add(PhaseResult(name=phase.name, status=SKIPPED, message="not selected"))
                    self.bus.emit(PhaseSkipped(name=phase.name, reason="not selected", **self.run_ctx))
                    continue

                result = self._run_phase(phase, ctx)
                report.add(result)

                if result.status == FAILED:
                    failed_name = phase.name
                    failure = result.cause
                    for rest in phases[index + 1:]:
                        report.add(PhaseResult(name=rest.name, status=SKIPPED, message=f"{phase.name} failed"))
                        self.bus.emit(PhaseSkipped(name=rest.name, reason=f"{phase.name} failed", **self.run_ctx))
                    break

                if stop_after == phase.name:
                    report.stopped_after = phase.name
                    log.info("Stopped after %s as requested", phase.name)
                    self.bus.emit(RunStopped(after=phase.name, **self.run_ctx))
                    break
        except BaseException as exc:
            if isinstance(exc, KeyboardInterrupt):
                log.warning("Interrupted by user")
            report.cleanup_errors = self._cleanup(ctx)
            self._summary(report)
            raise
        else:
            report.cleanup_errors = self._cleanup(ctx)
            self._summary(report)

        if failed_name is not None:
            failed = next(r for r in report.results if r.name == failed_name)
            raise PhaseError(failed_name, failed.error or "unknown error", report=report) from failure
        return report

    def _run_phase(self, phase: Phase, ctx: Any) -> PhaseResult:
        log.info("==> %s%s", phase.name, f": {phase.description}" if phase.description else "")
        self.bus.emit(PhaseStarted(name=phase.name, description=phase.description, **self.run_ctx))
        t0 = time.time()
        try:
            message = phase.run(ctx)
        except KeyboardInterrupt:
            raise
        except Exception as exc:
            duration = time.time() - t0
            self.bus.emit(PhaseFailed(name=phase.name, error=str(exc), critical=phase.critical, **self.run_ctx))
            if not phase.critical:
                log.warning("[%s] non-critical phase failed: %s", phase.name, exc)
                return PhaseResult(name=phase.name, status=WARNED, duration_s=duration, error=str(exc))
            log.error("[%s] failed: %s", phase.name, exc)
            return PhaseResult(name=phase.name, status=FAILED, duration_s=duration, error=str(exc), cause=exc)

        duration = time.time() - t0
        self.bus.emit(
            PhaseSucceeded(name=phase.name, duration_ms=int(duration * 1000), message=message, **self.run_ctx)
        )
        log.info("[%s] done (%.1fs)", phase.name, duration)
        return PhaseResult(name=phase.name, status=OK, duration_s=duration, message=message)

    def _cleanup(self, ctx: Any) -> List[str]:
        cleanup: Optional[CleanupStack] = getattr(ctx, "cleanup", None)
        if cleanup is None:
            return []
        self.bus.emit(CleanupStarted(steps=len(cleanup), **self.run_ctx))

        def _on_error(label: str, exc: Exception) -> None:
            self.bus.emit(CleanupStepFailed(step=label, error=str(exc), **self.run_ctx))

        return cleanup.run(on_error=_on_error)

    def _summary(self, report: RunReport) -> None:
        counts = {s: sum(1 for r in report.results if r.status == s) for s in (OK, FAILED, SKIPPED, WARNED)}
        self.bus.emit(
            RunSummary(
                ok=counts[OK],
                failed=counts[FAILED],
                skipped=counts[SKIPPED],
                warned=counts[WARNED],
                **self.run_ctx,
            )
        )
        log.info("Run summary: %s", report.summary())
