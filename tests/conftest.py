from __future__ import annotations

import io
import subprocess
import threading
from typing import Any

import pytest
from rich.console import Console

from serve_probe.core.config import resolve_settings
from serve_probe.core.console import RunLog
from serve_probe.core.docker import CommandResult, ContainerLaunch


class FakeLogProcess:
    def __init__(self) -> None:
        self._done = threading.Event()
        self.terminated = False

    def wait(self, timeout: float | None = None) -> int:
        if not self._done.wait(timeout):
            raise subprocess.TimeoutExpired("docker logs", timeout)
        return 0

    def terminate(self) -> None:
        self.terminated = True
        self._done.set()

    def kill(self) -> None:
        self._done.set()


class FakeRuntime:
    """In-memory container runtime; records every call instead of talking to Docker."""

    def __init__(self, *, running: bool = True, run_ok: bool = True, log_text: str = "") -> None:
        self.running = running
        self.run_ok = run_ok
        self.log_text = log_text
        self.launches: list[ContainerLaunch] = []
        self.removed: list[str] = []
        self.volumes_created: list[str] = []
        self.volumes_removed: list[str] = []
        self.processes: list[FakeLogProcess] = []

    def run(self, launch: ContainerLaunch) -> CommandResult:
        self.launches.append(launch)
        if self.run_ok:
            return CommandResult(ok=True, returncode=0, stdout="c0ffee\n", stderr="")
        return CommandResult(ok=False, returncode=125, stdout="", stderr="image not found")

    def is_running(self, name: str) -> bool:
        return self.running

    def remove(self, name: str) -> bool:
        self.removed.append(name)
        return True

    def follow_logs(self, name: str, sink: Any) -> FakeLogProcess:
        sink.write(self.log_text.encode())
        sink.flush()
        proc = FakeLogProcess()
        self.processes.append(proc)
        return proc

    def create_volume(self, name: str) -> bool:
        self.volumes_created.append(name)
        return True

    def remove_volume(self, name: str) -> bool:
        self.volumes_removed.append(name)
        return True


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def settings_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "models": ["facebook/opt-125m"],
        "docker": {"image": "vllm/vllm-openai:latest"},
        "require_hf_token": False,
        "cache": {"mode": "none"},
        "timeouts": {"startup": 30, "container": 60, "poll_interval": 5},
        "test": {"num_loops": 1, "prompts_per_loop": 2, "cooldown": 0, "log_grace": 0},
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_settings(tmp_path):
    def _make(*, environ: dict[str, str] | None = None, flags: dict[str, Any] | None = None, **overrides: Any):
        data = settings_data(output={"dir": str(tmp_path / "runs")}, **overrides)
        return resolve_settings(data, env=environ or {}, flags=flags or {})

    return _make


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def run_log() -> RunLog:
    return RunLog(Console(file=io.StringIO(), width=200))
