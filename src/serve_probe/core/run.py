from __future__ import annotations

import itertools
import os
import re
import shlex
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import httpx
from tqdm import tqdm

from serve_probe.adapters.registry import get_adapter
from serve_probe.adapters.types import BackendAdapter, Mount
from serve_probe.core.config import Settings
from serve_probe.core.console import RunLog
from serve_probe.core.docker import ContainerRuntime
from serve_probe.core.errors import ConfigError
from serve_probe.core.lifecycle import TrialContext, TrialController
from serve_probe.core.records import OutputRecord, TrialResult, escape_content
from serve_probe.core.storage import append_jsonl, write_json
from serve_probe.core.trial import TrialSpec, build_trial_plan, cache_volume_name
from serve_probe.core.verdicts import TrialVerdict


VOLUME_HF_HOME = "/root/.cache/huggingface"
WORKSPACE_TARGET = "/workspace/"
WORKSPACE_HF_HOME = "/workspace/.cache/huggingface"


@dataclass(frozen=True)
class RunSummary:
    total: int
    counts: dict[str, int]
    pass_rate: int  # integer percent

    @property
    def successes(self) -> int:
        return self.counts.get(TrialVerdict.SUCCESS.value, 0)

    @property
    def failures(self) -> int:
        return self.total - self.successes


class RunAggregator:
    """Collects trial results in completion order; the only owner of results."""

    def __init__(self) -> None:
        self.results: list[TrialResult] = []

    def add(self, result: TrialResult) -> None:
        self.results.append(result)

    def summary(self) -> RunSummary:
        counts = {v.value: 0 for v in TrialVerdict}
        for r in self.results:
            counts[r.verdict.value] += 1
        total = len(self.results)
        pass_rate = counts[TrialVerdict.SUCCESS.value] * 100 // total if total else 0
        return RunSummary(total=total, counts=counts, pass_rate=pass_rate)

    @property
    def exit_code(self) -> int:
        return 0 if all(r.verdict is TrialVerdict.SUCCESS for r in self.results) else 1


def image_slug(image: str) -> str:
    return re.sub(r"[/:]", "_", image)


def run_dir_name(settings: Settings, stamp: str) -> str:
    return f"{settings.framework}_{settings.profile}_{image_slug(settings.docker.image)}_{stamp}"


def preflight(settings: Settings) -> dict[str, BackendAdapter]:
    """Resolve one adapter per framework in use and validate the run up front.

    Raises ConfigError before any container is started.
    """
    adapters: dict[str, BackendAdapter] = {}
    for target in settings.targets:
        if target.framework in adapters:
            continue
        adapter = get_adapter(target.framework, endpoint_modes=settings.endpoint_modes)
        validate = getattr(adapter, "validate_config", None)
        if validate is not None:
            problems = validate(settings)
            if problems:
                raise ConfigError(f"{target.framework}: " + "; ".join(problems))
        adapters[target.framework] = adapter

    if settings.require_hf_token and not settings.hf_token:
        raise ConfigError(
            "HF_TOKEN environment variable is not set. "
            "Export it (or put it in .env); tokens: https://huggingface.co/settings/tokens"
        )
    return adapters


def cache_mounts(settings: Settings, *, volume: str | None) -> tuple[list[Mount], str | None, str | None]:
    """Mounts, HF_HOME and workdir for the configured cache mode."""
    cache = settings.cache
    if cache.mode == "volume" and volume:
        return [Mount(source=volume, target=VOLUME_HF_HOME)], VOLUME_HF_HOME, None
    if cache.mode == "workspace":
        base = cache.base_dir
        mounts = [Mount(source=str(base), target=WORKSPACE_TARGET)]
        for sub in cache.mounts:
            mounts.append(Mount(source=str(base / sub), target=f"{WORKSPACE_TARGET}{sub}"))
        return mounts, WORKSPACE_HF_HOME, WORKSPACE_TARGET
    return [], None, None


def trial_env(settings: Settings, hf_home: str | None) -> tuple[tuple[str, str], ...]:
    env: list[tuple[str, str]] = []
    if hf_home:
        env.append(("HF_HOME", hf_home))
    if settings.hf_token:
        env.append(("HF_TOKEN", settings.hf_token))
        env.append(("HUGGING_FACE_HUB_TOKEN", settings.hf_token))
    return tuple(env)


def to_output_records(result: TrialResult, settings: Settings) -> list[OutputRecord]:
    return [
        OutputRecord(
            timestamp=rec.timestamp,
            docker_image=settings.docker.image,
            env_vars=settings.env_summary,
            serving_args=result.serving_args,
            model=result.model,
            endpoint=result.endpoint,
            serve_launch_status=1 if result.launched else 0,
            prompt=escape_content(rec.prompt.content),
            response=rec.escaped,
            status=rec.verdict.value,
            framework=result.framework,
            trial_id=result.trial_id,
            trial_verdict=result.verdict.value,
        )
        for rec in result.records
    ]


def describe_plan(settings: Settings) -> list[str]:
    """Human-readable dry-run summary; starts nothing."""
    adapters = {t.framework: get_adapter(t.framework, endpoint_modes=settings.endpoint_modes) for t in settings.targets}
    t = settings.timeouts
    lines = [
        f"Profile:          {settings.profile}",
        f"Framework:        {settings.framework}",
        f"Docker Image:     {settings.docker.image}",
        f"Models:           {', '.join(x.target_spec for x in settings.targets)}",
        f"Server Port:      {settings.port}",
        f"Endpoint Modes:   {', '.join(settings.endpoint_modes)}",
        f"Test Loops:       {settings.loops}",
        f"Prompts/Loop:     {len(settings.prompts)}",
        f"Success Pattern:  {settings.success_pattern or '<none>'}",
        f"Timeouts:         startup={t.startup_s:.0f}s container={t.container_s:.0f}s prompt={t.prompt_s:.0f}s",
        f"Docker Settings:  shm={settings.docker.shm_size} network={settings.docker.network} "
        f"devices={' '.join(settings.docker.devices) or '<none>'}",
        f"Cache:            {settings.cache.mode}",
        f"Environment Vars: {settings.env_summary or '<none>'}",
        f"Error Patterns:   {' '.join(settings.error_patterns) or '<none>'}",
        f"Output Dir:       {settings.output_dir}",
        "Server Commands:",
    ]
    for target in settings.targets:
        argv = adapters[target.framework].build_launch_command(target.model, settings.port, settings.server_args)
        lines.append(f"  {shlex.join(argv)}")
    return lines


def run_probe(
    settings: Settings,
    *,
    runtime: ContainerRuntime,
    log: RunLog,
    client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    controller_factory: Callable[..., TrialController] = TrialController,
) -> dict[str, Any]:
    adapters = preflight(settings)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = settings.output_dir / run_dir_name(settings, stamp)
    run_dir.mkdir(parents=True, exist_ok=True)
    log.attach(run_dir / "summary.log")
    results_path = run_dir / "results.jsonl"

    # Container names must not collide with a concurrent run on the same host.
    run_tag = f"{stamp}_{os.getpid()}"
    plan = build_trial_plan(settings, run_tag=run_tag)

    log.rule(f"{settings.profile.upper()} RUN")
    log.info(f"Framework    : {settings.framework}")
    log.info(f"Docker image : {settings.docker.image}")
    log.info(f"Models       : {', '.join(t.target_spec for t in settings.targets)}")
    log.info(f"Trials       : {len(plan)}")
    log.info(f"Results dir  : {run_dir}")

    aggregator = RunAggregator()
    owns_client = client is None
    http = client if client is not None else httpx.Client()
    pbar = tqdm(total=len(plan), unit="trial", desc="Probe", dynamic_ncols=True)
    try:
        for (framework, model), group in itertools.groupby(plan, key=lambda s: (s.framework, s.model)):
            _run_target(
                list(group),
                settings=settings,
                adapter=adapters[framework],
                runtime=runtime,
                client=http,
                log=log,
                run_dir=run_dir,
                run_tag=run_tag,
                results_path=results_path,
                aggregator=aggregator,
                pbar=pbar,
                sleep=sleep,
                clock=clock,
                controller_factory=controller_factory,
            )
    finally:
        pbar.close()
        if owns_client:
            http.close()
        summary = aggregator.summary()
        _log_summary(log, settings, summary, run_dir)
        write_json(run_dir / "summary.json", _summary_payload(settings, aggregator, summary, run_dir))

    return {
        "run_dir": run_dir,
        "results_path": results_path,
        "summary": summary,
        "exit_code": aggregator.exit_code,
    }


def _run_target(
    specs: list[TrialSpec],
    *,
    settings: Settings,
    adapter: BackendAdapter,
    runtime: ContainerRuntime,
    client: httpx.Client,
    log: RunLog,
    run_dir: Path,
    run_tag: str,
    results_path: Path,
    aggregator: RunAggregator,
    pbar: tqdm,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
    controller_factory: Callable[..., TrialController],
) -> None:
    target = specs[0].target
    volume: str | None = None
    if settings.cache.mode == "volume":
        volume = cache_volume_name(target, run_tag)
        if runtime.create_volume(volume):
            log.info(f"  HF cache volume: {volume}")
        else:
            log.warn(f"Could not create volume {volume}; docker will create it on first use")

    mounts, hf_home, workdir = cache_mounts(settings, volume=volume)
    log_dir = run_dir / target.safe_model

    try:
        for spec in specs:
            log.rule(f"[{spec.index}/{pbar.total}] {spec.framework}:{spec.model} {spec.endpoint_mode} iter {spec.loop}")
            # Clean up any leftover container with the same name.
            runtime.remove(spec.container_name)

            ctx = TrialContext(
                spec=spec,
                settings=settings,
                adapter=adapter,
                log_dir=log_dir,
                extra_volumes=tuple(mounts),
                extra_env=trial_env(settings, hf_home),
                workdir=workdir,
            )
            controller = controller_factory(
                ctx, runtime=runtime, client=client, log=log, sleep=sleep, clock=clock
            )
            result = controller.run()
            aggregator.add(result)
            append_jsonl(results_path, to_output_records(result, settings))

            elapsed = f"{result.elapsed_s:.0f}s" if result.elapsed_s is not None else "?"
            if result.verdict is TrialVerdict.SUCCESS:
                log.ok(f"  Trial {spec.trial_id} finished in {elapsed}: {result.verdict}")
            else:
                log.fail(f"  Trial {spec.trial_id} finished in {elapsed}: {result.verdict}")
            pbar.update(1)

            log.info(f"  Cooling down {settings.cooldown_s:.0f}s ...")
            sleep(settings.cooldown_s)
    finally:
        if volume is not None:
            log.info(f"  Removing HF cache volume: {volume}")
            if not runtime.remove_volume(volume):
                log.warn(f"Could not remove volume {volume}. Remove manually: docker volume rm {volume}")


def _log_summary(log: RunLog, settings: Settings, summary: RunSummary, run_dir: Path) -> None:
    log.rule(f"{settings.profile.upper()} RUN COMPLETE")
    log.info(f"  Framework    : {settings.framework}")
    log.info(f"  Docker image : {settings.docker.image}")
    log.info(f"  Total trials : {summary.total}")
    log.info(f"  Successes    : {summary.successes}")
    log.info(f"  Failures     : {summary.failures}")
    for verdict, n in summary.counts.items():
        if n:
            log.info(f"    {verdict:<22}: {n}")
    log.info(f"  Pass rate    : {summary.pass_rate}%")
    log.info(f"  Results dir  : {run_dir}")
    log.rule()


def _summary_payload(
    settings: Settings, aggregator: RunAggregator, summary: RunSummary, run_dir: Path
) -> dict[str, Any]:
    return {
        "profile": settings.profile,
        "framework": settings.framework,
        "docker_image": settings.docker.image,
        "run_dir": str(run_dir),
        "total": summary.total,
        "counts": summary.counts,
        "pass_rate": summary.pass_rate,
        "exit_code": aggregator.exit_code,
        "trials": [
            {
                "trial_id": r.trial_id,
                "framework": r.framework,
                "model": r.model,
                "endpoint": r.endpoint,
                "verdict": r.verdict.value,
                "health": r.health,
                "watchdog_fired": r.watchdog_fired,
                "error_pattern": r.error_pattern,
                "elapsed_s": r.elapsed_s,
                "log": str(r.log_path) if r.log_path else None,
            }
            for r in aggregator.results
        ],
    }
