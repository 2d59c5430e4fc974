# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/cli/app.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import typer

from infraboot.cleanup import Teardown
from infraboot.config.loader import load_config
from infraboot.errors import InfrabootError
from infraboot.flux import Flux, FluxHandoff
from infraboot.logging.log import init_logging, log_banner
from infraboot.observers.console import ConsoleObserver
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import new_ctx
from infraboot.observers.jsonfile import JsonFileObserver
from infraboot.observers.logger import LoggerObserver
from infraboot.phases import phase0, phase1, phase2
from infraboot.phases.context import BootstrapContext
from infraboot.phases.runner import Phase, PhaseRunner, RunReport
from infraboot.utils.execution import ExecutionContext
from infraboot.verify import CheckRunner, Verifier, run_verification

log = logging.getLogger("infraboot")

app = typer.Typer(help="Bootstrap a k3s + Flux GitOps platform on a bare machine")

LOG_DIR = Path.home() / ".infraboot" / "logs"

# shared options
ConfigOpt = typer.Option(None, "--config", "-c", help="Bootstrap config YAML")
NodesOpt = typer.Option(None, "--nodes", min=1, help="Number of cluster nodes")
TierOpt = typer.Option(None, "--tier", help="Resource tier: small, medium or large")
EnvOpt = typer.Option(None, "--environment", "-e", help="Target environment (clusters/<env> in deployments)")
SkipValidationOpt = typer.Option(False, "--skip-validation", help="Skip per-phase prerequisite checks")
DryRunOpt = typer.Option(False, "--dry-run", help="Log commands instead of running them")
VerboseOpt = typer.Option(False, "--verbose", "-v", help="Debug output on the console")

HINTS = {
    "phase0": ["Check network connectivity and sudo access", "Re-run: infraboot phase0 --verbose"],
    "phase1": [
        "Check k3s: sudo systemctl status k3s",
        "Check pods: kubectl get pods -n bootstrap",
        "Terraform state lives in the bootstrap-state work directory",
    ],
    "phase2": [
        "Check Flux: flux get sources git && flux get kustomizations",
        "Check Vault: kubectl get pods -n vault",
        "Resume a partial run with: infraboot phase2 --stop-after <2a|2b|2c|2d>",
    ],
    "handoff": ["Check: kubectl get externalsecret -n flux-system flux-git-auth"],
    "verify": ["Check pod status: kubectl get pods -A"],
    "cleanup": ["Leftovers may need manual removal (see the log)"],
}


def _context(
    *,
    config: Optional[Path],
    nodes: Optional[int],
    tier: Optional[str],
    environment: Optional[str],
    skip_validation: bool,
    dry_run: bool,
    verbose: bool,
    preserve_credentials: bool = False,
) -> BootstrapContext:
    logger, run_id, log_path = init_logging(verbose=verbose)

    cfg = load_config(
        config,
        overrides={"cluster.nodes": nodes, "cluster.tier": tier, "environment": environment},
    )

    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(LOG_DIR / f"{run_id}.jsonl"),
    ]
    run_ctx = new_ctx(env=cfg.environment, context=None)
    run_ctx["run_id"] = run_id

    return BootstrapContext.create(
        cfg,
        execution=ExecutionContext(dry_run=dry_run, skip_validation=skip_validation),
        bus=EventBus(observers=observers),
        run_ctx=run_ctx,
        preserve_credentials=preserve_credentials,
    )


def _execute(command: str, build: Callable[[], BootstrapContext], phases: Sequence[Phase], *,
             title: str, stop_after: Optional[str] = None) -> RunReport:
    """Run phases and turn failures into exit codes (1 on error, 130 on Ctrl-C)."""
    try:
        ctx = build()
        cluster = ctx.config.cluster
        log_banner(
            log,
            title,
            f"Environment : {ctx.config.environment}",
            f"Nodes/tier  : {cluster.nodes} / {cluster.tier}",
            f"Phases      : {', '.join(p.name for p in phases)}",
            f"Run ID      : {ctx.run_ctx['run_id']}",
            *(["Mode        : dry-run"] if ctx.dry_run else []),
        )
        report = PhaseRunner(ctx.bus, ctx.run_ctx).run(phases, ctx, stop_after=stop_after)
    except KeyboardInterrupt:
        log.error("Interrupted; cleanup has run")
        raise typer.Exit(130)
    except (InfrabootError, TimeoutError) as exc:
        log.error("%s failed: %s", command, exc)
        log.info("Debugging hints:")
        for hint in HINTS.get(command, []):
            log.info("  - %s", hint)
        raise typer.Exit(1)

    log_banner(log, f"{title}: complete", report.summary())
    return report


# ------------------------------------------------------------------------------
# Phases not tied to a bootstrap step
# ------------------------------------------------------------------------------

def _handoff_phase() -> Phase:
    def run(ctx: BootstrapContext) -> str:
        flux = Flux(ctx.runner, ctx.kubectl, ctx.config.flux, ctx.config.git)
        FluxHandoff(flux, work_dir=ctx.config.work_dir, bus=ctx.bus, run_ctx=ctx.run_ctx).run()
        return f"Flux git auth now uses secret {ctx.config.flux.handoff_secret}"

    return Phase("handoff", run, "Flux credential handoff to External Secrets")


def _verify_phase(suites: Optional[List[str]]) -> Phase:
    def run(ctx: BootstrapContext) -> str:
        checks = CheckRunner(ctx.bus, ctx.run_ctx)
        run_verification(Verifier(ctx.kubectl, ctx.config, checks, environ=ctx.environ), suites)
        if not checks.ok:
            raise InfrabootError(f"{checks.failed} required check(s) failed ({checks.summary()})")
        return checks.summary()

    return Phase("verify", run, "Deployment verification")


def _cleanup_phase() -> Phase:
    def run(ctx: BootstrapContext) -> str:
        work = ctx.config.work_dir
        teardown = Teardown(ctx.runner, ctx.kubectl, directories=[work, ctx.terraform_dir])
        issues = teardown.run()
        if issues:
            raise InfrabootError(f"cleanup completed with issues: {'; '.join(issues)}")
        return "all components removed"

    return Phase("cleanup", run, "Remove k3s, tools and bootstrap directories")


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def bootstrap(
    config: Optional[Path] = ConfigOpt,
    nodes: Optional[int] = NodesOpt,
    tier: Optional[str] = TierOpt,
    environment: Optional[str] = EnvOpt,
    handoff: bool = typer.Option(False, "--handoff", help="Switch Flux git auth to the Vault-synced secret at the end"),
    skip_validation: bool = SkipValidationOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """Run phases 0, 1 and 2 in one process; credentials stay in memory between them."""
    phases = phase0.build_phases() + phase1.build_phases() + phase2.build_phases()
    if handoff:
        phases.append(_handoff_phase())
    _execute(
        "bootstrap",
        lambda: _context(config=config, nodes=nodes, tier=tier, environment=environment,
                         skip_validation=skip_validation, dry_run=dry_run, verbose=verbose,
                         preserve_credentials=True),
        phases,
        title="Platform bootstrap",
    )


@app.command("phase0")
def phase0_cmd(
    config: Optional[Path] = ConfigOpt,
    nodes: Optional[int] = NodesOpt,
    tier: Optional[str] = TierOpt,
    environment: Optional[str] = EnvOpt,
    skip_validation: bool = SkipValidationOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """Environment validation and tool installation."""
    _execute(
        "phase0",
        lambda: _context(config=config, nodes=nodes, tier=tier, environment=environment,
                         skip_validation=skip_validation, dry_run=dry_run, verbose=verbose),
        phase0.build_phases(),
        title="Phase 0: environment and tools",
    )


@app.command("phase1")
def phase1_cmd(
    config: Optional[Path] = ConfigOpt,
    nodes: Optional[int] = NodesOpt,
    tier: Optional[str] = TierOpt,
    environment: Optional[str] = EnvOpt,
    skip_validation: bool = SkipValidationOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """k3s cluster plus bootstrap MinIO/PostgreSQL on local Terraform state."""
    _execute(
        "phase1",
        lambda: _context(config=config, nodes=nodes, tier=tier, environment=environment,
                         skip_validation=skip_validation, dry_run=dry_run, verbose=verbose),
        phase1.build_phases(),
        title="Phase 1: cluster and bootstrap storage",
    )


@app.command("phase2")
def phase2_cmd(
    config: Optional[Path] = ConfigOpt,
    nodes: Optional[int] = NodesOpt,
    tier: Optional[str] = TierOpt,
    environment: Optional[str] = EnvOpt,
    stop_after: Optional[str] = typer.Option(None, "--stop-after", help="Stop after 2a, 2b, 2c or 2d"),
    skip_validation: bool = SkipValidationOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """State migration into MinIO, Flux bootstrap and credential persistence."""
    _execute(
        "phase2",
        lambda: _context(config=config, nodes=nodes, tier=tier, environment=environment,
                         skip_validation=skip_validation, dry_run=dry_run, verbose=verbose),
        phase2.build_phases(),
        title="Phase 2: state migration and GitOps",
        stop_after=stop_after,
    )


@app.command("handoff")
def handoff_cmd(
    config: Optional[Path] = ConfigOpt,
    environment: Optional[str] = EnvOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """Switch Flux git auth from the bootstrap secret to the External-Secrets one."""
    _execute(
        "handoff",
        lambda: _context(config=config, nodes=None, tier=None, environment=environment,
                         skip_validation=False, dry_run=dry_run, verbose=verbose),
        [_handoff_phase()],
        title="Flux credential handoff",
    )


@app.command("verify")
def verify_cmd(
    config: Optional[Path] = ConfigOpt,
    environment: Optional[str] = EnvOpt,
    suite: Optional[List[str]] = typer.Option(None, "--suite", help="Run only these suites (repeatable)"),
    verbose: bool = VerboseOpt,
):
    """Check the deployed platform; exits 1 when a required check fails."""
    _execute(
        "verify",
        lambda: _context(config=config, nodes=None, tier=None, environment=environment,
                         skip_validation=False, dry_run=False, verbose=verbose),
        [_verify_phase(suite or None)],
        title="Deployment verification",
    )


@app.command("cleanup")
def cleanup_cmd(
    config: Optional[Path] = ConfigOpt,
    force: bool = typer.Option(False, "--force", help="Skip the confirmation prompt"),
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """Remove k3s, installed tools and bootstrap directories."""
    if not force:
        typer.secho("This will remove the k3s cluster and all its data, the installed tools "
                    "and the bootstrap directories.", fg=typer.colors.YELLOW)
        if not typer.confirm("Are you sure you want to proceed?", default=False):
            typer.echo("Cleanup cancelled")
            raise typer.Exit(0)
    _execute(
        "cleanup",
        lambda: _context(config=config, nodes=None, tier=None, environment=None,
                         skip_validation=False, dry_run=dry_run, verbose=verbose),
        [_cleanup_phase()],
        title="Cleanup",
    )


if __name__ == "__main__":
    app()
