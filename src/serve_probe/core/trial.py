from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from serve_probe.adapters.types import Mount
from serve_probe.core.config import Settings
from serve_probe.core.model_spec import TargetSpec


# Docker names max out at 128 characters.
MAX_CONTAINER_NAME = 128


class EndpointMode(str, Enum):
    CHAT = "chat"
    COMPLETION = "completion"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ResourceLimits:
    memlock: int | None
    shm_size: str
    devices: tuple[str, ...]
    network: str


@dataclass(frozen=True)
class TrialSpec:
    trial_id: str
    index: int
    loop: int
    model: str
    framework: str
    endpoint_mode: EndpointMode
    image: str
    port: int
    container_name: str
    launch_args: tuple[tuple[str, Any], ...]
    env: tuple[tuple[str, str], ...]
    resources: ResourceLimits
    volumes: tuple[Mount, ...]

    @property
    def target(self) -> TargetSpec:
        return TargetSpec(framework=self.framework, model=self.model)


def container_name_for(
    *, framework: str, profile: str, target: TargetSpec, mode: EndpointMode, loop: int, run_tag: str
) -> str:
    name = f"{framework}_{profile}_{target.safe_model}_{mode.value}_iter{loop}_{run_tag}"
    return name[:MAX_CONTAINER_NAME]


def cache_volume_name(target: TargetSpec, run_tag: str) -> str:
    return f"hf_cache_{target.safe_model}_{run_tag}"[:MAX_CONTAINER_NAME]


def build_trial_plan(settings: Settings, *, run_tag: str) -> list[TrialSpec]:
    """Expand settings into the ordered trial list: target x endpoint mode x loop.

    The stress profile is one target, chat mode, N loops; the sanity profile is
    many targets, both modes, one loop.
    """
    resources = ResourceLimits(
        memlock=settings.docker.memlock,
        shm_size=settings.docker.shm_size,
        devices=settings.docker.devices,
        network=settings.docker.network,
    )

    trials: list[TrialSpec] = []
    for target in settings.targets:
        for mode_text in settings.endpoint_modes:
            mode = EndpointMode(mode_text)
            for loop in range(1, settings.loops + 1):
                index = len(trials) + 1
                trials.append(
                    TrialSpec(
                        trial_id=f"{index:04d}_{target.safe_model}_{mode.value}_iter{loop}",
                        index=index,
                        loop=loop,
                        model=target.model,
                        framework=target.framework,
                        endpoint_mode=mode,
                        image=settings.docker.image,
                        port=settings.port,
                        container_name=container_name_for(
                            framework=target.framework,
                            profile=settings.profile,
                            target=target,
                            mode=mode,
                            loop=loop,
                            run_tag=run_tag,
                        ),
                        launch_args=settings.server_args,
                        env=settings.env,
                        resources=resources,
                        volumes=settings.docker.volumes,
                    )
                )
    return trials
