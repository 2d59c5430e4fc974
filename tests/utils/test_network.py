from pathlib import Path

import pytest
import requests

from infraboot.utils.network import download, http_ok
from infraboot.utils.retry import RetryError


class FakeResponse:
    def __init__(self, content=b"", status=200):
        self.content = content
        self.status_code = status

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code}")


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.urls = []

    def get(self, url, **kwargs):
        self.urls.append(url)
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def test_download_retries_then_writes(tmp_path: Path, no_sleep):
    session = FakeSession(requests.ConnectionError("reset"), FakeResponse(b"", 200), FakeResponse(b"#!/bin/sh"))
    dest = tmp_path / "bin" / "install.sh"

    assert download("https://get.k3s.io", dest, session=session, delay=1) == dest
    assert dest.read_bytes() == b"#!/bin/sh"
    assert len(session.urls) == 3
    assert no_sleep == [1, 1]


def test_download_returns_bytes():
    assert download("https://x/y", session=FakeSession(FakeResponse(b"abc"))) == b"abc"


def test_download_gives_up(no_sleep):
    session = FakeSession(FakeResponse(status=404), FakeResponse(status=404))
    with pytest.raises(RetryError):
        download("https://x/missing", attempts=2, session=session)


def test_http_ok():
    assert http_ok("http://localhost:9000/minio/health/ready", session=FakeSession(FakeResponse(b"", 200)))
    assert not http_ok("http://x", session=FakeSession(FakeResponse(status=503)))
    assert not http_ok("http://x", session=FakeSession(requests.ConnectionError("refused")))
