from __future__ import annotations

import shutil
import socket
import subprocess
from dataclasses import dataclass
from typing import IO, Protocol, Sequence

from serve_probe.adapters.types import Mount
from serve_probe.core.trial import ResourceLimits


@dataclass(frozen=True)
class ContainerLaunch:
    name: str
    image: str
    command: tuple[str, ...]
    entrypoint: str | None
    env: tuple[tuple[str, str], ...]
    volumes: tuple[Mount, ...]
    resources: ResourceLimits
    port: int
    workdir: str | None = None
    hostname: str | None = None


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


class LogProcess(Protocol):
    def wait(self, timeout: float | None = None) -> int | None:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class ContainerRuntime(Protocol):
    def run(self, launch: ContainerLaunch) -> CommandResult:
        ...

    def is_running(self, name: str) -> bool:
        ...

    def remove(self, name: str) -> bool:
        ...

    def follow_logs(self, name: str, sink: IO[bytes]) -> LogProcess:
        ...

    def create_volume(self, name: str) -> bool:
        ...

    def remove_volume(self, name: str) -> bool:
        ...


def default_hostname() -> str:
    return "PROBE-" + socket.gethostname().split(".", 1)[0]


def build_run_command(launch: ContainerLaunch, *, docker_bin: str = "docker") -> list[str]:
    res = launch.resources
    cmd = [
        docker_bin,
        "run",
        "-d",
        "--cap-add=SYS_PTRACE",
        "--cap-add=CAP_SYS_ADMIN",
        "--security-opt",
        "seccomp=unconfined",
        "--user",
        "root",
        "--ipc=host",
        "--name",
        launch.name,
        f"--shm-size={res.shm_size}",
        "--network",
        res.network,
    ]
    if res.memlock is not None:
        cmd += ["--ulimit", f"memlock={res.memlock}:{res.memlock}"]
    if launch.hostname:
        cmd += ["--hostname", launch.hostname]
    if res.network != "host":
        cmd += ["-p", f"{launch.port}:{launch.port}"]

    for device in res.devices:
        cmd.append(f"--device={device}")
    # AMD GPUs need the video group for /dev/kfd access.
    if "/dev/kfd" in res.devices:
        cmd += ["--group-add", "video"]

    for mount in launch.volumes:
        cmd += ["-v", mount.as_flag()]
    for key, value in launch.env:
        cmd += ["-e", f"{key}={value}"]
    if launch.workdir:
        cmd += ["--workdir", launch.workdir]
    if launch.entrypoint:
        cmd += ["--entrypoint", launch.entrypoint]

    cmd.append(launch.image)
    cmd.extend(launch.command)
    return cmd


class DockerRuntime:
    def __init__(self, docker_bin: str = "docker", command_timeout_s: float = 120.0) -> None:
        self.docker_bin = docker_bin
        self.command_timeout_s = command_timeout_s

    def available(self) -> bool:
        return shutil.which(self.docker_bin) is not None

    def run(self, launch: ContainerLaunch) -> CommandResult:
        return self._exec(build_run_command(launch, docker_bin=self.docker_bin))

    def is_running(self, name: str) -> bool:
        res = self._exec([self.docker_bin, "ps", "-q", "-f", f"name=^{name}$"])
        return res.ok and bool(res.stdout.strip())

    def remove(self, name: str) -> bool:
        res = self._exec([self.docker_bin, "rm", "-f", name])
        # Removing a container that is already gone is not a failure.
        return res.ok or "No such container" in res.stderr

    def follow_logs(self, name: str, sink: IO[bytes]) -> subprocess.Popen:
        return subprocess.Popen(
            [self.docker_bin, "logs", "-f", name],
            stdout=sink,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
        )

    def create_volume(self, name: str) -> bool:
        return self._exec([self.docker_bin, "volume", "create", name]).ok

    def remove_volume(self, name: str) -> bool:
        return self._exec([self.docker_bin, "volume", "rm", name]).ok

    def _exec(self, cmd: Sequence[str]) -> CommandResult:
        try:
            proc = subprocess.run(
                list(cmd),
                text=True,
                capture_output=True,
                timeout=self.command_timeout_s,
            )
        except FileNotFoundError as e:
            return CommandResult(ok=False, returncode=127, stdout="", stderr=str(e))
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                ok=False,
                returncode=124,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr) or f"timed out after {self.command_timeout_s}s",
            )
        return CommandResult(
            ok=proc.returncode == 0,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
