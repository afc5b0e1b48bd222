from __future__ import annotations

import threading
from typing import Callable

from serve_probe.core.docker import ContainerRuntime


class Watchdog:
    """Force-removes a trial's container once it outlives the hard ceiling.

    Runs on its own thread and is independent of the health/exercise flow.
    `cancel()` stops it without side effects if the ceiling has not fired yet.
    """

    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        container_name: str,
        ceiling_s: float,
        on_fire: Callable[[str], None] | None = None,
    ) -> None:
        self.runtime = runtime
        self.container_name = container_name
        self.ceiling_s = ceiling_s
        self.on_fire = on_fire
        self.fired = False
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"watchdog-{container_name}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def cancel(self, join_timeout_s: float | None = 10.0) -> None:
        self._cancelled.set()
        if self._thread.is_alive():
            self._thread.join(timeout=join_timeout_s)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        if self._cancelled.wait(self.ceiling_s):
            return
        if not self.runtime.is_running(self.container_name):
            return
        self.fired = True
        if self.on_fire is not None:
            self.on_fire(
                f"[WATCHDOG] Timeout reached ({self.ceiling_s:.0f}s). Killing {self.container_name}"
            )
        self.runtime.remove(self.container_name)
