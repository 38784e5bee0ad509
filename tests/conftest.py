"""
Shared fixtures: fake FFmpeg processes, a manual timer scheduler and a
controllable clock, so worker lifecycles can be driven step by step.
"""

import itertools
import subprocess
import threading

import pytest

from snapshot_service.capture.registry import WorkerRegistry
from snapshot_service.utils.config import Config


class FakeProcess:
    """Stands in for subprocess.Popen."""

    _pids = itertools.count(1000)

    def __init__(self, cmd, stderr_lines=None, ignore_term=False):
        self.cmd = cmd
        self.pid = next(self._pids)
        self.returncode = None
        self.stderr = list(stderr_lines or [])
        self.ignore_term = ignore_term
        self.terminated = False
        self.killed = False
        self._exited = threading.Event()

    def finish(self, code=0):
        self.returncode = code
        self._exited.set()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.cmd, timeout)
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.ignore_term:
            self.finish(-15)

    def kill(self):
        self.killed = True
        self.finish(-9)


class FakeSpawner:
    """Records every command and hands out FakeProcess objects."""

    def __init__(self):
        self.processes = []
        self.fail = False
        self.error = None
        self.stderr_lines = []
        self.ignore_term = False

    def __call__(self, cmd):
        if self.fail:
            raise OSError(2, "No such file or directory", cmd[0])
        if self.error is not None:
            raise self.error
        process = FakeProcess(cmd, self.stderr_lines, self.ignore_term)
        self.processes.append(process)
        return process

    @property
    def last(self):
        return self.processes[-1]


class FakeScheduler:
    """Collects deferred calls; tests fire them explicitly."""

    def __init__(self):
        self.calls = []

    def __call__(self, delay, callback):
        self.calls.append([delay, callback, False])

    def pending(self):
        return [call for call in self.calls if not call[2]]

    def delays(self):
        return [call[0] for call in self.calls]

    def fire_next(self):
        call = self.pending()[0]
        call[2] = True
        call[1]()
        return call[0]

    def fire_all(self):
        while self.pending():
            self.fire_next()


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary snapshot directory."""
    return Config({
        'snapshots': {'dir': str(tmp_path / 'snapshots')},
        'source': {'base_url': 'http://srs.local:8080'},
    })


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(config, spawner, scheduler, clock):
    registry = WorkerRegistry(config, spawn=spawner, scheduler=scheduler, clock=clock)
    yield registry
    registry.shutdown(wait=False)


@pytest.fixture
def exit_process(registry):
    """Make a worker's current process exit and wait for the exit to be handled."""
    def _exit(stream_id, code=1):
        worker = registry._workers[stream_id]
        process = worker.process
        watcher = worker._watcher
        process.finish(code)
        watcher.join(timeout=5)
        assert not watcher.is_alive()
        return process

    return _exit
