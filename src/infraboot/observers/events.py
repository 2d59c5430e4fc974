# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single bootstrap invocation
    env: str          # target environment (production, homelab, ...)
    context: Optional[str]  # kube-context

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(env: str, context: Optional[str]) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


# ---------------------------------------------------------------------
# Phase runner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    phases: List[str]

@dataclass(frozen=True)
class PhaseStarted(BaseEvent):
    name: str
    description: str = ""

@dataclass(frozen=True)
class PhaseSucceeded(BaseEvent):
    name: str
    duration_ms: int
    message: Optional[str] = None

@dataclass(frozen=True)
class PhaseFailed(BaseEvent):
    name: str
    error: str
    critical: bool = True

@dataclass(frozen=True)
class PhaseSkipped(BaseEvent):
    name: str
    reason: str

@dataclass(frozen=True)
class RunStopped(BaseEvent):
    after: str

@dataclass(frozen=True)
class CleanupStarted(BaseEvent):
    steps: int

@dataclass(frozen=True)
class CleanupStepFailed(BaseEvent):
    step: str
    error: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    ok: int
    failed: int
    skipped: int
    warned: int


# ---------------------------------------------------------------------
# Readiness polling
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class WaitStarted(BaseEvent):
    description: str
    timeout_s: float

@dataclass(frozen=True)
class WaitSucceeded(BaseEvent):
    description: str
    elapsed_s: float

@dataclass(frozen=True)
class WaitTimedOut(BaseEvent):
    description: str
    timeout_s: float


# ---------------------------------------------------------------------
# Credentials and secret store
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CredentialsGenerated(BaseEvent):
    names: List[str]

@dataclass(frozen=True)
class CredentialsCleared(BaseEvent):
    count: int

@dataclass(frozen=True)
class SecretStored(BaseEvent):
    path: str
    critical: bool
    attempts: int = 1

@dataclass(frozen=True)
class SecretStoreFailed(BaseEvent):
    path: str
    critical: bool
    error: str


# ---------------------------------------------------------------------
# Flux auth handoff
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HandoffStarted(BaseEvent):
    source: str
    target_secret: str

@dataclass(frozen=True)
class HandoffCompleted(BaseEvent):
    source: str
    target_secret: str

@dataclass(frozen=True)
class HandoffRolledBack(BaseEvent):
    source: str
    error: str


# ---------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CheckResult(BaseEvent):
    name: str
    status: str       # "PASS" | "FAIL" | "WARN"
    optional: bool = False
