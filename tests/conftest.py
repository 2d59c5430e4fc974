import subprocess
import types

import pytest

from infraboot.observers.dispatcher import EventBus


RUN_CTX = {"ts": "2026-01-01T00:00:00Z", "run_id": "test-run", "env": "test", "context": None}


def cp(rc=0, out="", err=""):
    return types.SimpleNamespace(returncode=rc, stdout=out, stderr=err)


class SpyRun:
    """
    Fake subprocess.run. Routes are (argv prefix, result) pairs; the first
    matching prefix wins. A result may be a callable taking argv and kwargs.
    """

    def __init__(self, routes=None):
        self.calls = []
        self.inputs = []
        self.kwargs = []
        self.routes = list(routes or [])

    def on(self, prefix, result):
        self.routes.insert(0, (list(prefix), result))
        return self

    def __call__(self, argv, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        self.inputs.append(kwargs.get("input"))
        self.kwargs.append(kwargs)
        for prefix, result in self.routes:
            if argv[:len(prefix)] == prefix:
                return result(argv, kwargs) if callable(result) else result
        return cp(0)

    def find(self, *prefix):
        return [c for c in self.calls if c[:len(prefix)] == list(prefix)]

    def called(self, *prefix):
        return bool(self.find(*prefix))


class Capture:
    def __init__(self):
        self.events = []

    def notify(self, e):
        self.events.append(e)

    def names(self):
        return [e.__class__.__name__ for e in self.events]

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture
def spy(monkeypatch):
    s = SpyRun()
    monkeypatch.setattr(subprocess, "run", s)
    return s


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def bus(capture):
    return EventBus([capture])


@pytest.fixture
def run_ctx():
    return dict(RUN_CTX)


@pytest.fixture
def no_sleep(monkeypatch):
    slept = []
    monkeypatch.setattr("time.sleep", lambda s: slept.append(s))
    return slept


@pytest.fixture(autouse=True)
def _as_root(monkeypatch):
    # commands are asserted without a sudo prefix
    monkeypatch.setattr("infraboot.utils.system.is_root", lambda: True)


class FakeTime:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_time(monkeypatch):
    """time.sleep advances time.monotonic, so polling loops time out instantly."""
    ft = FakeTime()
    monkeypatch.setattr("time.sleep", ft.sleep)
    monkeypatch.setattr("time.monotonic", ft.monotonic)
    return ft
