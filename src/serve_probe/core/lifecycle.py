from __future__ import annotations

import shlex
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

import httpx

from serve_probe.adapters.types import BackendAdapter, Mount
from serve_probe.core.config import Settings
from serve_probe.core.console import RunLog
from serve_probe.core.docker import ContainerLaunch, ContainerRuntime, default_hostname
from serve_probe.core.eval import classify_trial, scan_log_for_errors
from serve_probe.core.exerciser import ExerciseOptions, exercise
from serve_probe.core.health import HealthOutcome, ProbeResult, wait_for_server
from serve_probe.core.logstream import LogStreamer
from serve_probe.core.records import ResponseRecord, TrialResult
from serve_probe.core.trial import EndpointMode, TrialSpec
from serve_probe.core.verdicts import TrialVerdict
from serve_probe.core.watchdog import Watchdog


LAUNCH_SCRIPT_TARGET = "/tmp/serve_probe_launch.sh"


class TrialState(str, Enum):
    CREATED = "CREATED"
    LAUNCHING = "LAUNCHING"
    READY = "READY"
    DEAD = "DEAD"
    START_TIMEOUT = "START_TIMEOUT"
    EXERCISING = "EXERCISING"
    TEARDOWN = "TEARDOWN"
    DONE = "DONE"


_HEALTH_STATES = {
    HealthOutcome.READY: TrialState.READY,
    HealthOutcome.DEAD: TrialState.DEAD,
    HealthOutcome.TIMED_OUT: TrialState.START_TIMEOUT,
}


@dataclass
class RunningInstance:
    spec: TrialSpec
    container_name: str
    base_url: str
    started_at: float
    launch_artifact_dir: Path | None = None


@dataclass(frozen=True)
class TrialContext:
    """Everything one trial needs, passed explicitly instead of through globals."""

    spec: TrialSpec
    settings: Settings
    adapter: BackendAdapter
    log_dir: Path
    extra_volumes: tuple[Mount, ...] = ()
    extra_env: tuple[tuple[str, str], ...] = ()
    workdir: str | None = None


@dataclass
class LaunchPlan:
    argv: list[str]
    launch: ContainerLaunch
    artifact_dir: Path | None = None

    @property
    def serving_args(self) -> str:
        return shlex.join(self.argv)


@dataclass
class _TrialFiles:
    container_log: Path
    exchange_log: Path
    stamp: str = field(default="")


class TrialController:
    """Owns one trial's container from launch to teardown.

    CREATED -> LAUNCHING -> (READY | DEAD | START_TIMEOUT) -> [EXERCISING]
    -> TEARDOWN -> DONE. Teardown runs exactly once on every exit path.
    """

    def __init__(
        self,
        ctx: TrialContext,
        *,
        runtime: ContainerRuntime,
        client: httpx.Client,
        log: RunLog,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        probe: Callable[..., ProbeResult] = wait_for_server,
        exerciser: Callable[..., list[ResponseRecord]] = exercise,
    ) -> None:
        self.ctx = ctx
        self.runtime = runtime
        self.client = client
        self.log = log
        self.sleep = sleep
        self.clock = clock
        self._probe = probe
        self._exercise = exerciser

        self.state = TrialState.CREATED
        self.history: list[TrialState] = [TrialState.CREATED]
        self.teardown_count = 0
        self.instance: RunningInstance | None = None
        self.watchdog: Watchdog | None = None
        self.streamer: LogStreamer | None = None
        self._plan: LaunchPlan | None = None
        self._artifact_dir: Path | None = None
        self._exchanged: list[ResponseRecord] = []
        self._torn_down = False

        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        base = ctx.log_dir / f"{ctx.spec.trial_id}_{stamp}"
        self.files = _TrialFiles(
            container_log=base.with_name(base.name + ".log"),
            exchange_log=base.with_name(base.name + ".exchanges.log"),
            stamp=stamp,
        )

    def run(self) -> TrialResult:
        spec = self.ctx.spec
        prompts = self.ctx.settings.prompts
        started = self.clock()
        health: HealthOutcome | None = None
        records: list[ResponseRecord] = []
        log_error: str | None = None
        verdict = TrialVerdict.SERVER_START_TIMEOUT

        try:
            self._transition(TrialState.LAUNCHING)
            self.instance = self._launch()

            timeouts = self.ctx.settings.timeouts
            self.log.info(f"  Waiting for server readiness (up to {timeouts.startup_s:.0f}s) ...")
            result = self._probe(
                self.instance,
                timeout_s=timeouts.startup_s,
                health_path=self.ctx.adapter.health_path(),
                runtime=self.runtime,
                client=self.client,
                poll_interval_s=timeouts.poll_interval_s,
                probe_timeout_s=timeouts.probe_s,
                sleep=self.sleep,
                clock=self.clock,
            )
            health = result.outcome
            self._transition(_HEALTH_STATES[health])

            if health is HealthOutcome.READY:
                self.log.ok(f"  Server is ready! (took ~{result.elapsed_s:.0f}s)")
                self._transition(TrialState.EXERCISING)
                records = self._exercise(
                    prompts,
                    adapter=self.ctx.adapter,
                    client=self.client,
                    options=self._exercise_options(),
                    exchange_log=self.files.exchange_log,
                    on_record=self._on_record,
                )
                # Give the log follower time to flush before scanning.
                self.sleep(self.ctx.settings.log_grace_s)
                log_error = scan_log_for_errors(
                    self.files.container_log, self.ctx.settings.error_patterns
                )
                if log_error is not None:
                    self.log.fail(f"  FAIL: Found error pattern '{log_error}' in logs.")
            else:
                reason = "container died" if health is HealthOutcome.DEAD else "timed out"
                self.log.fail(
                    f"  FAIL: Server did not become ready within "
                    f"{timeouts.startup_s:.0f}s ({reason})."
                )
                records = self._propagate(prompts, TrialVerdict.SERVER_START_TIMEOUT)

            verdict = classify_trial(health=health, records=records, log_error=log_error)
        except Exception as e:
            self.log.fail(f"  Trial {spec.trial_id} aborted: {type(e).__name__}: {e}")
            if health is HealthOutcome.READY:
                # Finished exchanges keep their records; only unfinished slots are filled.
                records = list(records or self._exchanged)
                records += self._propagate(
                    prompts[len(records):], TrialVerdict.NO_RESPONSE
                )
                verdict = classify_trial(health=health, records=records)
            else:
                records = self._propagate(prompts, TrialVerdict.SERVER_START_TIMEOUT)
                verdict = TrialVerdict.SERVER_START_TIMEOUT
        finally:
            self.teardown()

        final_log = self._finalize_log(verdict)
        self._transition(TrialState.DONE)

        return TrialResult(
            trial_id=spec.trial_id,
            framework=spec.framework,
            model=spec.model,
            endpoint=self.endpoint_path.lstrip("/"),
            verdict=verdict,
            health=str(health) if health is not None else "not_started",
            launched=health is HealthOutcome.READY,
            serving_args=self._plan.serving_args if self._plan else "",
            records=records,
            log_path=final_log,
            error_pattern=log_error,
            watchdog_fired=bool(self.watchdog and self.watchdog.fired),
            elapsed_s=self.clock() - started,
        )

    @property
    def endpoint_path(self) -> str:
        adapter = self.ctx.adapter
        if self.ctx.spec.endpoint_mode is EndpointMode.COMPLETION:
            return adapter.completion_path()  # type: ignore[attr-defined]
        return adapter.chat_path()

    def plan_launch(self) -> LaunchPlan:
        """Build the container launch for this trial; may write a launch script."""
        ctx = self.ctx
        spec = ctx.spec
        settings = ctx.settings
        adapter = ctx.adapter

        argv = adapter.build_launch_command(spec.model, spec.port, spec.launch_args)
        entrypoint = settings.docker.entrypoint
        if entrypoint is None and hasattr(adapter, "docker_entrypoint"):
            entrypoint = adapter.docker_entrypoint()

        volumes = list(spec.volumes) + list(ctx.extra_volumes)
        if hasattr(adapter, "extra_mounts"):
            volumes.extend(adapter.extra_mounts())

        artifact_dir: Path | None = None
        if settings.use_launch_script and hasattr(adapter, "build_launch_script"):
            artifact_dir = Path(tempfile.mkdtemp(prefix="serve-probe-"))
            self._artifact_dir = artifact_dir
            script = adapter.build_launch_script(spec.model, spec.port, spec.launch_args, artifact_dir)
            volumes.append(Mount(source=str(script), target=LAUNCH_SCRIPT_TARGET, read_only=True))
            entrypoint = entrypoint or "/bin/bash"
            command: tuple[str, ...] = (LAUNCH_SCRIPT_TARGET,)
        elif entrypoint:
            command = ("-c", shlex.join(argv))
        else:
            command = ("bash", "-c", shlex.join(argv))

        launch = ContainerLaunch(
            name=spec.container_name,
            image=spec.image,
            command=command,
            entrypoint=entrypoint,
            env=spec.env + ctx.extra_env,
            volumes=tuple(volumes),
            resources=spec.resources,
            port=spec.port,
            workdir=ctx.workdir,
            hostname=default_hostname(),
        )
        return LaunchPlan(argv=argv, launch=launch, artifact_dir=artifact_dir)

    def teardown(self) -> None:
        """Release everything the trial owns. Safe to call more than once."""
        if self._torn_down:
            return
        self._torn_down = True
        self.teardown_count += 1
        self._transition(TrialState.TEARDOWN)
        name = self.ctx.spec.container_name

        if self.watchdog is not None:
            self._cleanup_step("cancel watchdog", self.watchdog.cancel)

        self.log.info(f"  Stopping container {name} ...")
        try:
            removed = self.runtime.remove(name)
        except Exception as e:
            removed = False
            self.log.warn(f"Could not remove container {name}: {e}")
        if not removed:
            self.log.warn(f"Could not remove container {name}. Remove manually: docker rm -f {name}")

        if self.streamer is not None:
            self._cleanup_step("stop log stream", self.streamer.stop)

        if self._artifact_dir is not None:
            shutil.rmtree(self._artifact_dir, ignore_errors=True)

    def _launch(self) -> RunningInstance:
        spec = self.ctx.spec
        settings = self.ctx.settings
        self.ctx.log_dir.mkdir(parents=True, exist_ok=True)

        self._plan = self.plan_launch()
        self.log.info(f"  Starting Docker container ({spec.container_name}) ...")
        res = self.runtime.run(self._plan.launch)
        with self.files.container_log.open("a", encoding="utf-8") as f:
            f.write(f"$ serve: {self._plan.serving_args}\n")
            if res.output:
                f.write(res.output + "\n")
        if not res.ok:
            self.log.fail(f"  docker run failed (exit {res.returncode}): {res.output[:300]}")

        instance = RunningInstance(
            spec=spec,
            container_name=spec.container_name,
            base_url=f"http://{settings.host}:{spec.port}",
            started_at=self.clock(),
            launch_artifact_dir=self._plan.artifact_dir,
        )

        self.watchdog = Watchdog(
            runtime=self.runtime,
            container_name=spec.container_name,
            ceiling_s=settings.timeouts.container_s,
            on_fire=self.log.warn,
        )
        self.watchdog.start()

        self.streamer = LogStreamer(
            runtime=self.runtime,
            container_name=spec.container_name,
            path=self.files.container_log,
        )
        self.streamer.start()
        return instance

    def _exercise_options(self) -> ExerciseOptions:
        settings = self.ctx.settings
        mode = self.ctx.spec.endpoint_mode.value
        return ExerciseOptions(
            mode=mode,
            model=self.ctx.spec.model,
            url=self.instance.base_url + self.endpoint_path,  # type: ignore[union-attr]
            timeout_s=settings.timeouts.prompt_s,
            default_params=settings.default_params,
            endpoint_params=settings.endpoint_params.get(mode, {}),
            extra_params=settings.extra_params,
            system_prompt=settings.system_prompt,
            success_pattern=settings.success_pattern,
        )

    def _propagate(self, prompts, verdict: TrialVerdict) -> list[ResponseRecord]:
        return [
            ResponseRecord(prompt=p, raw_body="", content="", display=verdict.value, verdict=verdict)
            for p in prompts
        ]

    def _on_record(self, idx: int, rec: ResponseRecord) -> None:
        self._exchanged.append(rec)
        self._log_record(idx, rec)

    def _log_record(self, idx: int, rec: ResponseRecord) -> None:
        total = len(self.ctx.settings.prompts)
        self.log.info(f"    Prompt {idx}/{total}: {rec.prompt.content[:80]}")
        if rec.verdict is TrialVerdict.SUCCESS:
            self.log.info(f"      Status: {rec.verdict}")
        else:
            self.log.warn(f"Prompt {idx}/{total} status: {rec.verdict}")
        self.log.info(f"      Response (truncated): {rec.escaped[:120]}...")

    def _finalize_log(self, verdict: TrialVerdict) -> Path | None:
        src = self.files.container_log
        if not src.exists():
            return None
        dst = src.with_name(src.name[: -len(".log")] + f"_{verdict.value}.log")
        try:
            src.rename(dst)
        except OSError as e:
            self.log.warn(f"Could not rename {src.name}: {e}")
            return src
        return dst

    def _cleanup_step(self, label: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception as e:
            self.log.warn(f"Teardown step '{label}' failed: {e}")

    def _transition(self, state: TrialState) -> None:
        self.state = state
        self.history.append(state)
