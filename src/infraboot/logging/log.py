# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/logging/log.py

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

TRACE = 5
logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(logging.WARNING, "WARN")

LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

BANNER_MIN_WIDTH = 60
BANNER_MAX_WIDTH = 120


def level_from_env(default: int = logging.INFO) -> int:
    """Resolve LOG_LEVEL (ERROR|WARN|INFO|DEBUG|TRACE) to a logging level."""
    raw = os.environ.get("LOG_LEVEL", "").strip().upper()
    return LEVELS.get(raw, default)


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "infraboot",
    verbose: bool = False,
    level: Optional[int] = None,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full trace log file under ~/.infraboot/logs
      - console handler (INFO, DEBUG with --verbose, or LOG_LEVEL)
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".infraboot" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(TRACE)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if os.environ.get("LOG_TIMESTAMPS", "true").lower() == "false":
        console_formatter = logging.Formatter("%(levelname)-7s | %(message)s")
    else:
        console_formatter = formatter

    # File = FULL TRACE
    fh = logging.FileHandler(log_path)
    fh.setLevel(TRACE)
    fh.setFormatter(formatter)

    if level is None:
        level = logging.DEBUG if verbose else level_from_env()

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(console_formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("=== infraboot run started ===")
    logger.info(f"run_id={run_id}")
    logger.info(f"log_file={log_path}")

    return logger, run_id, log_path


def log_banner(
    logger: logging.Logger,
    title: str,
    *lines: str,
    width: int | None = None,
) -> None:
    longest = max([len(title)] + [len(line) for line in lines]) + 4
    width = width or longest
    width = max(BANNER_MIN_WIDTH, min(BANNER_MAX_WIDTH, width))
    inner = width - 2

    logger.info("+" + "=" * inner + "+")
    logger.info("|" + title[:inner].center(inner) + "|")
    if lines:
        logger.info("+" + "-" * inner + "+")
        for line in lines:
            logger.info("|" + f"  {line}"[:inner].ljust(inner) + "|")
    logger.info("+" + "=" * inner + "+")
