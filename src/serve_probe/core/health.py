from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

import httpx

from serve_probe.core.docker import ContainerRuntime

if TYPE_CHECKING:
    from serve_probe.core.lifecycle import RunningInstance


class HealthOutcome(str, Enum):
    READY = "ready"
    DEAD = "dead"
    TIMED_OUT = "timed_out"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProbeResult:
    outcome: HealthOutcome
    elapsed_s: float
    probes: int


def wait_for_server(
    instance: RunningInstance,
    *,
    timeout_s: float,
    health_path: str,
    runtime: ContainerRuntime,
    client: httpx.Client,
    poll_interval_s: float = 5.0,
    probe_timeout_s: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProbeResult:
    """Poll the health endpoint until it answers 200, the container dies, or time runs out.

    The liveness check comes first on every tick so a crashed server is
    reported as DEAD right away instead of waiting out the timeout.
    """
    url = instance.base_url + health_path
    start = clock()
    probes = 0
    while True:
        elapsed = clock() - start
        if elapsed >= timeout_s:
            return ProbeResult(HealthOutcome.TIMED_OUT, elapsed, probes)

        if not runtime.is_running(instance.container_name):
            return ProbeResult(HealthOutcome.DEAD, elapsed, probes)

        probes += 1
        if _probe(client, url, probe_timeout_s):
            return ProbeResult(HealthOutcome.READY, clock() - start, probes)

        sleep(poll_interval_s)


def _probe(client: httpx.Client, url: str, timeout_s: float) -> bool:
    try:
        r = client.get(url, timeout=timeout_s)
    except httpx.HTTPError:
        return False
    return r.status_code == 200
