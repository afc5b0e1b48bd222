from __future__ import annotations

import subprocess
import threading
from pathlib import Path

from serve_probe.core.docker import ContainerRuntime, LogProcess


class LogStreamer:
    """Follows a container's stdout/stderr into the trial's container log file."""

    def __init__(self, *, runtime: ContainerRuntime, container_name: str, path: Path) -> None:
        self.runtime = runtime
        self.container_name = container_name
        self.path = path
        self._process: LogProcess | None = None
        self._started = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"logs-{container_name}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()
        self._started.wait(timeout=10.0)

    def stop(self, join_timeout_s: float = 10.0) -> None:
        proc = self._process
        if proc is not None:
            proc.terminate()
            try:
                proc.wait(timeout=join_timeout_s)
            except subprocess.TimeoutExpired:
                proc.kill()
        if self._thread.is_alive():
            self._thread.join(timeout=join_timeout_s)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("ab") as sink:
            try:
                self._process = self.runtime.follow_logs(self.container_name, sink)
            except OSError as e:
                sink.write(f"[LOGS] could not follow {self.container_name}: {e}\n".encode())
                return
            finally:
                self._started.set()
            self._process.wait()
