from __future__ import annotations

import subprocess

from serve_probe.adapters.types import Mount
from serve_probe.core.docker import ContainerLaunch, DockerRuntime, build_run_command
from serve_probe.core.trial import ResourceLimits


def _launch(**kw) -> ContainerLaunch:
    base = dict(
        name="vllm_stress_m_chat_iter1_t1",
        image="rocm/vllm:latest",
        command=("-c", "vllm serve m --port 8000"),
        entrypoint="/bin/bash",
        env=(("HF_TOKEN", "hf_x"),),
        volumes=(Mount("/home/u", "/workspace/"), Mount("/tmp/s.sh", "/tmp/s.sh", read_only=True)),
        resources=ResourceLimits(
            memlock=999332768, shm_size="128G", devices=("/dev/kfd", "/dev/dri"), network="host"
        ),
        port=8000,
        workdir="/workspace/",
        hostname="PROBE-node1",
    )
    base.update(kw)
    return ContainerLaunch(**base)


def test_build_run_command_flags() -> None:
    cmd = build_run_command(_launch())
    assert cmd[:3] == ["docker", "run", "-d"]
    assert "--ipc=host" in cmd
    assert cmd[cmd.index("--name") + 1] == "vllm_stress_m_chat_iter1_t1"
    assert "--shm-size=128G" in cmd
    assert cmd[cmd.index("--ulimit") + 1] == "memlock=999332768:999332768"
    assert "--device=/dev/kfd" in cmd and "--device=/dev/dri" in cmd
    assert cmd[cmd.index("--group-add") + 1] == "video"
    assert "/tmp/s.sh:/tmp/s.sh:ro" in cmd
    assert cmd[cmd.index("-e") + 1] == "HF_TOKEN=hf_x"
    assert cmd[cmd.index("--entrypoint") + 1] == "/bin/bash"
    assert cmd[-3:] == ["rocm/vllm:latest", "-c", "vllm serve m --port 8000"]
    assert "-p" not in cmd


def test_bridge_network_publishes_port_and_no_video_group() -> None:
    launch = _launch(
        resources=ResourceLimits(memlock=None, shm_size="16G", devices=(), network="bridge"),
        entrypoint=None,
    )
    cmd = build_run_command(launch)
    assert cmd[cmd.index("-p") + 1] == "8000:8000"
    assert "--group-add" not in cmd
    assert "--ulimit" not in cmd
    assert "--entrypoint" not in cmd


def test_remove_treats_missing_container_as_removed(monkeypatch) -> None:
    def fake_run(cmd, **kw):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Error: No such container: c1")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert DockerRuntime().remove("c1")


def test_missing_docker_binary_is_a_failed_result(monkeypatch) -> None:
    def fake_run(cmd, **kw):
        raise FileNotFoundError("docker")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert DockerRuntime().is_running("c1") is False
    assert DockerRuntime().create_volume("v1") is False
