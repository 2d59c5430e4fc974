import types

import pytest

from infraboot.errors import ConfigError, PhaseError
from infraboot.observers.events import CleanupStarted, PhaseSkipped, RunStopped, RunSummary
from infraboot.phases.runner import FAILED, OK, SKIPPED, WARNED, CleanupStack, Phase, PhaseRunner


def _ctx():
    return types.SimpleNamespace(cleanup=CleanupStack(), seen=[])


def _step(name, fail=False):
    def run(ctx):
        ctx.seen.append(name)
        if fail:
            raise RuntimeError(f"{name} broke")
        return f"{name} done"
    return run


def test_runs_all_phases_in_order(bus, capture, run_ctx):
    ctx = _ctx()
    report = PhaseRunner(bus, run_ctx).run([Phase("a", _step("a")), Phase("b", _step("b"))], ctx)

    assert ctx.seen == ["a", "b"]
    assert [r.status for r in report.results] == [OK, OK]
    assert report.results[0].message == "a done"
    assert report.ok
    assert capture.names()[0] == "RunStarted"
    assert isinstance(capture.events[-1], RunSummary)


def test_critical_failure_skips_rest_and_raises(bus, capture, run_ctx):
    ctx = _ctx()
    phases = [Phase("a", _step("a")), Phase("b", _step("b", fail=True)), Phase("c", _step("c"))]

    with pytest.raises(PhaseError) as ei:
        PhaseRunner(bus, run_ctx).run(phases, ctx)

    err = ei.value
    assert err.phase == "b"
    assert err.report.failed_phase == "b"
    assert isinstance(err.__cause__, RuntimeError)
    assert [r.status for r in err.report.results] == [OK, FAILED, SKIPPED]
    assert ctx.seen == ["a", "b"]
    assert [e.name for e in capture.of(PhaseSkipped)] == ["c"]


def test_non_critical_failure_is_warned(bus, run_ctx):
    ctx = _ctx()
    phases = [Phase("a", _step("a", fail=True), critical=False), Phase("b", _step("b"))]
    report = PhaseRunner(bus, run_ctx).run(phases, ctx)
    assert [r.status for r in report.results] == [WARNED, OK]
    assert report.ok


def test_stop_after(bus, capture, run_ctx):
    ctx = _ctx()
    phases = [Phase("2a", _step("2a")), Phase("2b", _step("2b")), Phase("2c", _step("2c"))]
    report = PhaseRunner(bus, run_ctx).run(phases, ctx, stop_after="2b")
    assert ctx.seen == ["2a", "2b"]
    assert report.stopped_after == "2b"
    assert capture.of(RunStopped)[0].after == "2b"


def test_unknown_stop_after_rejected(bus, run_ctx):
    with pytest.raises(ConfigError, match="--stop-after"):
        PhaseRunner(bus, run_ctx).run([Phase("2a", _step("2a"))], _ctx(), stop_after="9z")


def test_only_selects_phases(bus, run_ctx):
    ctx = _ctx()
    phases = [Phase("a", _step("a")), Phase("b", _step("b"))]
    report = PhaseRunner(bus, run_ctx).run(phases, ctx, only=["b"])
    assert ctx.seen == ["b"]
    assert report.results[0].status == SKIPPED


def test_cleanup_runs_lifo_even_on_failure(bus, capture, run_ctx):
    ctx = _ctx()
    order = []
    ctx.cleanup.push("first", lambda: order.append("first"))
    ctx.cleanup.push("second", lambda: order.append("second"))

    with pytest.raises(PhaseError):
        PhaseRunner(bus, run_ctx).run([Phase("a", _step("a", fail=True))], ctx)

    assert order == ["second", "first"]
    assert capture.of(CleanupStarted)[0].steps == 2


def test_cleanup_runs_on_keyboard_interrupt(bus, run_ctx):
    ctx = _ctx()
    cleaned = []
    ctx.cleanup.push("clear", lambda: cleaned.append(True))

    def interrupted(_):
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        PhaseRunner(bus, run_ctx).run([Phase("a", interrupted)], ctx)
    assert cleaned == [True]


def test_cleanup_step_failure_is_collected(bus, capture, run_ctx):
    ctx = _ctx()
    ran = []

    def boom():
        raise OSError("gone")

    ctx.cleanup.push("later", lambda: ran.append(True))
    ctx.cleanup.push("boom", boom)

    report = PhaseRunner(bus, run_ctx).run([Phase("a", _step("a"))], ctx)
    assert ran == [True]
    assert report.cleanup_errors == ["boom: gone"]
    assert "CleanupStepFailed" in capture.names()
