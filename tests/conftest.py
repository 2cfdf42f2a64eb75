from __future__ import annotations

import queue
from collections import deque

import pytest

import x11_guard
from x11_guard import GuardConfig


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeQueue:
    """Trigger queue whose blocking get() advances a FakeClock instead of sleeping."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.items: deque = deque()
        self.waits: list[float] = []

    def put(self, item) -> None:
        self.items.append(item)

    def get(self, timeout=None):
        if self.items:
            return self.items.popleft()
        self.waits.append(timeout)
        self.clock.advance(timeout)
        raise queue.Empty


class FakeOps:
    """Records every side effect of a restart sequence."""

    def __init__(self, exits_on_term: bool = True, already_gone: bool = False, launch_error: bool = False):
        self.exits_on_term = exits_on_term
        self.already_gone = already_gone
        self.launch_error = launch_error
        self.calls: list[tuple] = []
        self.reaped = 0
        self._killed = False

    def terminate(self, pid: int) -> bool:
        self.calls.append(("terminate", pid))
        return not self.already_gone

    def wait_exit(self, pid: int, timeout: float) -> bool:
        self.calls.append(("wait_exit", pid, timeout))
        return self.exits_on_term or self._killed

    def kill(self, pid: int) -> None:
        self.calls.append(("kill", pid))
        self._killed = True

    def launch(self, command: str) -> int:
        self.calls.append(("launch", command))
        if self.launch_error:
            raise x11_guard.LaunchError(f"cannot run {command!r}")
        return 4242

    def reap(self) -> None:
        self.reaped += 1

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeCounter:
    """Returns queued counts; an exception instance in the queue is raised."""

    def __init__(self, *counts):
        self.counts = deque(counts)
        self.display = "DisplaySocket(':0')"
        self.asked: list[int] = []

    def count(self, pid: int) -> int:
        self.asked.append(pid)
        value = self.counts.popleft() if len(self.counts) > 1 else self.counts[0]
        if isinstance(value, Exception):
            raise value
        return value


class FakeNotifier:
    def __init__(self):
        self.synced: list[tuple] = []
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def sync(self, target) -> None:
        self.synced.append((target.pid, target.generation))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> GuardConfig:
    return GuardConfig(app_name="qq", threshold=10, restart_cmd="qq --restart", cooldown=120, fallback_poll=15, scan_interval=2)


@pytest.fixture(autouse=True)
def quiet_logging():
    x11_guard.configure_logging(verbose=True, log_file=None)
    yield
    x11_guard.configure_logging()
