import logging

from infraboot.logging.log import TRACE, init_logging, level_from_env, log_banner


def test_level_from_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "trace")
    assert level_from_env() == TRACE
    monkeypatch.setenv("LOG_LEVEL", "bogus")
    assert level_from_env() == logging.INFO


def test_init_logging_writes_file(tmp_path):
    logger, run_id, path = init_logging(base_dir=tmp_path, name="infraboot-test")
    logger.log(TRACE, "deep detail")
    for h in logger.handlers:
        h.flush()
    text = path.read_text()
    assert run_id in path.name
    assert "deep detail" in text
    assert f"run_id={run_id}" in text


def test_banner_width(caplog):
    logger = logging.getLogger("banner-test")
    with caplog.at_level(logging.INFO, logger="banner-test"):
        log_banner(logger, "Phase 1", "Nodes/tier  : 1 / small")
    lines = [r.getMessage() for r in caplog.records]
    assert len(lines) == 5
    assert all(len(line) == 60 for line in lines)
    assert "Phase 1" in lines[1]
