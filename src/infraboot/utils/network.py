# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/utils/network.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import requests

from infraboot.utils.retry import retry

log = logging.getLogger("infraboot")

CONNECT_TIMEOUT = 30
READ_TIMEOUT = 300


class DownloadError(requests.RequestException):
    pass


def download(
    url: str,
    dest: Optional[Path] = None,
    *,
    attempts: int = 3,
    delay: float = 2,
    session: Optional[requests.Session] = None,
) -> bytes | Path:
    """
    Download ``url`` with retries.

    Returns the body as bytes when ``dest`` is None, otherwise writes the
    body to ``dest`` and returns the path. Empty bodies count as failures.
    """
    http = session or requests
    description = dest.name if dest else url.rsplit("/", 1)[-1] or url

    def _log_failure(attempt: int, exc: Exception) -> None:
        log.warning("Download attempt %d/%d for %s failed: %s", attempt, attempts, description, exc)

    @retry(retries=attempts, delay=delay, retry_on=(requests.RequestException,), on_retry=_log_failure)
    def _fetch() -> bytes:
        log.debug("Downloading from: %s", url)
        resp = http.get(url, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT), allow_redirects=True)
        resp.raise_for_status()
        if not resp.content:
            raise DownloadError(f"empty response from {url}")
        return resp.content

    body = _fetch()
    if dest is None:
        log.info("%s downloaded successfully", description)
        return body

    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(body)
    log.info("%s downloaded successfully (%d bytes)", description, len(body))
    return dest


def http_ok(url: str, *, timeout: float = 5, session: Optional[requests.Session] = None) -> bool:
    """True when ``url`` answers with a 2xx status."""
    http = session or requests
    try:
        return http.get(url, timeout=timeout).ok
    except requests.RequestException as exc:
        log.debug("GET %s failed: %s", url, exc)
        return False
