"""Shared fixtures: a scripted step executor and fast engine settings."""

import hashlib
import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest

from dagrun.artifacts import InMemoryArtifactStore
from dagrun.config import EngineConfig
from dagrun.controller import RunController
from dagrun.executor import StepExecutor, StepResult
from dagrun.model import RunContext, TransitionEvent
from dagrun.scheduler import RunObserver


class FakeExecutor(StepExecutor):
    """
    Runs nothing. Each command maps to an exit code, an exception to raise,
    or a callable(env) returning either; plus an optional delay. Every call
    is recorded.
    """

    def __init__(
        self,
        results: Optional[Dict[str, object]] = None,
        delays: Optional[Dict[str, float]] = None,
        files: Optional[Dict[str, bytes]] = None,
        ignore_stop: bool = False,
    ):
        self.results = dict(results or {})
        self.delays = dict(delays or {})
        self.files = dict(files or {})
        self.ignore_stop = ignore_stop
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.materialized: List[Tuple[str, bytes]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, command, env, timeout, stop=None, cwd=None):
        with self._lock:
            self.calls.append((command, dict(env)))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            started = time.monotonic()
            delay = self.delays.get(command, 0.0)
            while time.monotonic() - started < delay:
                if not self.ignore_stop:
                    if stop is not None and stop.is_set():
                        return StepResult(exit_code=-15, stopped=True)
                    if timeout is not None and time.monotonic() - started >= timeout:
                        return StepResult(exit_code=-9, timed_out=True)
                time.sleep(0.005)
            result = self.results.get(command, 0)
            if callable(result):
                result = result(env)
            if isinstance(result, BaseException):
                raise result
            return StepResult(exit_code=int(result), output=f"ran {command}".encode())
        finally:
            with self._lock:
                self.active -= 1

    def collect(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def materialize(self, path, data):
        with self._lock:
            self.materialized.append((path, data))

    def fingerprint(self, patterns):
        h = hashlib.sha256()
        for p in patterns:
            h.update(p.encode())
            h.update(self.files.get(p, b""))
        return h.hexdigest()[:16]

    def commands(self) -> List[str]:
        with self._lock:
            return [c for c, _ in self.calls]

    def env_of(self, command: str) -> Dict[str, str]:
        for c, env in self.calls:
            if c == command:
                return env
        raise KeyError(command)


class RecordingObserver(RunObserver):
    def __init__(self):
        self.events: List[TransitionEvent] = []

    def on_transition(self, event):
        self.events.append(event)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(max_workers=4, poll_interval=0.01, cancel_grace=0.5, cache_dir=str(tmp_path / "cache"))


@pytest.fixture
def push_main():
    return RunContext(event="push", ref="refs/heads/main", sha="abc123", actor="dev", run_id="run-main")


@pytest.fixture
def run_jobs(config, store):
    """run_jobs(jobs, context, executor, **config_overrides) -> RunResult"""

    def _run(jobs, context, executor, observers=(), cache=None, **overrides):
        cfg = config.merged(**overrides) if overrides else config
        controller = RunController(cfg, executor, store, observers=observers, cache=cache)
        return controller.execute(jobs, context)

    return _run
