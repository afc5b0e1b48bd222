from __future__ import annotations

import time

from serve_probe.core.logstream import LogStreamer
from serve_probe.core.watchdog import Watchdog

from conftest import FakeRuntime


def test_cancelled_watchdog_never_removes(runtime) -> None:
    dog = Watchdog(runtime=runtime, container_name="c1", ceiling_s=600)
    dog.start()
    time.sleep(0.05)
    dog.cancel()

    assert not dog.alive
    assert not dog.fired
    assert runtime.removed == []


def test_watchdog_fires_after_ceiling(runtime) -> None:
    messages: list[str] = []
    dog = Watchdog(runtime=runtime, container_name="c1", ceiling_s=0.01, on_fire=messages.append)
    dog.start()
    dog._thread.join(timeout=5)

    assert dog.fired
    assert runtime.removed == ["c1"]
    assert messages and "[WATCHDOG] Timeout reached" in messages[0]


def test_watchdog_skips_container_that_already_exited() -> None:
    runtime = FakeRuntime(running=False)
    dog = Watchdog(runtime=runtime, container_name="c1", ceiling_s=0.01)
    dog.start()
    dog._thread.join(timeout=5)

    assert not dog.fired
    assert runtime.removed == []


def test_log_streamer_writes_and_stops(tmp_path) -> None:
    runtime = FakeRuntime(log_text="INFO: Uvicorn running\n")
    path = tmp_path / "trial.log"
    streamer = LogStreamer(runtime=runtime, container_name="c1", path=path)
    streamer.start()
    assert streamer.alive

    streamer.stop()
    assert not streamer.alive
    assert runtime.processes[0].terminated
    assert "Uvicorn running" in path.read_text(encoding="utf-8")
