import logging

from infraboot.observers.console import ConsoleObserver
from infraboot.observers.dispatcher import EventBus
from infraboot.observers.events import PhaseFailed, PhaseStarted, new_ctx
from infraboot.observers.jsonfile import JsonFileObserver
from infraboot.observers.logger import LoggerObserver
from conftest import RUN_CTX


class Broken:
    def notify(self, e):
        raise RuntimeError("observer down")


def test_bus_survives_failing_observer(capture):
    bus = EventBus([Broken(), capture])
    bus.emit(PhaseStarted(name="0a", **RUN_CTX))
    assert capture.names() == ["PhaseStarted"]


def test_new_ctx_has_run_id():
    a, b = new_ctx("homelab", None), new_ctx("homelab", None)
    assert a["env"] == "homelab"
    assert a["ts"].endswith("Z")
    assert a["run_id"] != b["run_id"]


def test_jsonfile_journal(tmp_path):
    obs = JsonFileObserver(tmp_path / "logs" / "run.jsonl")
    obs.notify(PhaseStarted(name="1b", description="k3s", **RUN_CTX))
    obs.notify(PhaseFailed(name="1b", error="boom", **RUN_CTX))

    records = obs.read()
    assert [r["type"] for r in records] == ["PhaseStarted", "PhaseFailed"]
    assert records[1]["error"] == "boom"
    assert records[0]["run_id"] == "test-run"


def test_jsonfile_read_missing(tmp_path):
    assert JsonFileObserver(tmp_path / "none.jsonl").read() == []


def test_console_prints_event(capsys):
    ConsoleObserver().notify(PhaseFailed(name="2c", error="flux install failed", **RUN_CTX))
    out = capsys.readouterr().out
    assert "PhaseFailed" in out
    assert "error=flux install failed" in out
    assert "run_id" not in out


def test_logger_observer(caplog):
    logger = logging.getLogger("infraboot.test")
    with caplog.at_level(logging.DEBUG, logger="infraboot.test"):
        LoggerObserver(logger).notify(PhaseStarted(name="2a", **RUN_CTX))
    assert "[EVENT] PhaseStarted" in caplog.text
