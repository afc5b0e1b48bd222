from __future__ import annotations

from types import SimpleNamespace

import httpx

from serve_probe.core.health import HealthOutcome, wait_for_server

from conftest import FakeRuntime


INSTANCE = SimpleNamespace(base_url="http://localhost:8000", container_name="vllm_c1")


def _client(statuses: list[int]) -> httpx.Client:
    it = iter(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        status = next(it, statuses[-1])
        if status == 0:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _wait(client, runtime, clock, timeout_s=30.0):
    return wait_for_server(
        INSTANCE,
        timeout_s=timeout_s,
        health_path="/health",
        runtime=runtime,
        client=client,
        poll_interval_s=5.0,
        sleep=clock.sleep,
        clock=clock,
    )


def test_ready_after_a_few_probes(clock) -> None:
    with _client([0, 503, 200]) as client:
        result = _wait(client, FakeRuntime(), clock)
    assert result.outcome is HealthOutcome.READY
    assert result.probes == 3
    assert clock.sleeps == [5.0, 5.0]


def test_dead_container_is_reported_without_probing(clock) -> None:
    with _client([200]) as client:
        result = _wait(client, FakeRuntime(running=False), clock)
    assert result.outcome is HealthOutcome.DEAD
    assert result.probes == 0


def test_times_out_when_never_healthy(clock) -> None:
    with _client([503]) as client:
        result = _wait(client, FakeRuntime(), clock, timeout_s=30.0)
    assert result.outcome is HealthOutcome.TIMED_OUT
    assert result.elapsed_s >= 30.0
    assert result.probes == 6
