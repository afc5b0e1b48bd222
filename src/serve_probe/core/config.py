from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import dotenv_values, find_dotenv

from serve_probe.adapters.registry import known_backends
from serve_probe.adapters.types import Mount
from serve_probe.core.errors import ConfigError
from serve_probe.core.model_spec import TargetSpec, parse_target_spec
from serve_probe.core.prompts import (
    DEFAULT_PARAMS,
    FALLBACK_PROMPT,
    SANITY_PROMPTS,
    SANITY_SYSTEM_PROMPT,
    Prompt,
    expand_prompts,
    load_prompt_file,
    parse_prompts,
)


PROFILES = ("stress", "sanity")
ENDPOINT_MODES = ("chat", "completion")

BASE_DEFAULTS: dict[str, Any] = {
    "framework": "vllm",
    "models": [],
    "docker": {
        "image": "",
        "shm_size": "128G",
        "network": "host",
        "devices": [],
        "memlock": 999332768,
        "entrypoint": None,
        "volumes": [],
    },
    "server": {"host": "localhost", "port": 8000, "model_path": ""},
    "server_args": {},
    "env": {},
    "env_file": None,
    "timeouts": {
        "startup": 600,
        "container": 900,
        "prompt": 120,
        "probe": 5,
        "poll_interval": 5,
    },
    "test": {
        "num_loops": 20,
        "endpoint_modes": ["chat"],
        "prompts_per_loop": 10,
        "success_pattern": "",
        "cooldown": 5,
        "log_grace": 2,
    },
    "prompts_file": None,
    "prompts": None,
    "system_prompt": None,
    "default_params": {},
    "extra_params": {},
    "endpoint_params": {},
    "error_patterns": [],
    "cache": {"mode": "workspace", "base_dir": "~", "mounts": []},
    "launch": {"use_script": False},
    "output": {"dir": "runs"},
    "require_hf_token": True,
}

PROFILE_DEFAULTS: dict[str, dict[str, Any]] = {
    "stress": {},
    "sanity": {
        "docker": {
            "image": "vllm/vllm-openai-rocm:v0.15.0",
            "devices": ["/dev/kfd", "/dev/dri"],
        },
        "timeouts": {"container": 1200, "prompt": 180},
        "test": {
            "num_loops": 1,
            "endpoint_modes": ["chat", "completion"],
            "prompts_per_loop": None,
        },
        "system_prompt": SANITY_SYSTEM_PROMPT,
        "default_params": {"max_tokens": 512},
        "endpoint_params": {"chat": {"temperature": 0}, "completion": {"temperature": 0.7}},
        "cache": {"mode": "volume"},
        "launch": {"use_script": True},
    },
}

ENV_PREFIX = "SERVE_PROBE_"
ENV_OVERRIDES = {
    "PROFILE": "profile",
    "LOOPS": "test.num_loops",
    "IMAGE": "docker.image",
    "PORT": "server.port",
    "FRAMEWORK": "framework",
    "MODELS": "models",
    "OUTPUT_DIR": "output.dir",
}

FLAG_OVERRIDES = {
    "profile": "profile",
    "loops": "test.num_loops",
    "image": "docker.image",
    "port": "server.port",
    "framework": "framework",
    "models": "models",
    "output_dir": "output.dir",
}


@dataclass(frozen=True)
class DockerSettings:
    image: str
    shm_size: str
    network: str
    devices: tuple[str, ...]
    memlock: int | None
    entrypoint: str | None
    volumes: tuple[Mount, ...]


@dataclass(frozen=True)
class Timeouts:
    startup_s: float
    container_s: float
    prompt_s: float
    probe_s: float
    poll_interval_s: float


@dataclass(frozen=True)
class CacheSettings:
    mode: str  # volume|workspace|none
    base_dir: Path
    mounts: tuple[str, ...]


@dataclass(frozen=True)
class Settings:
    profile: str
    framework: str
    targets: tuple[TargetSpec, ...]
    endpoint_modes: tuple[str, ...]
    loops: int
    host: str
    port: int
    docker: DockerSettings
    timeouts: Timeouts
    server_args: tuple[tuple[str, Any], ...]
    env: tuple[tuple[str, str], ...]
    prompts: tuple[Prompt, ...]
    default_params: dict[str, Any]
    extra_params: dict[str, Any]
    endpoint_params: dict[str, dict[str, Any]]
    system_prompt: str | None
    success_pattern: str | None
    error_patterns: tuple[str, ...]
    cooldown_s: float
    log_grace_s: float
    cache: CacheSettings
    use_launch_script: bool
    output_dir: Path
    require_hf_token: bool
    hf_token: str | None
    config_path: Path | None

    @property
    def env_summary(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self.env)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def environment_layer(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Process environment on top of a `.env` file found from the cwd upwards.

    The `.env` file never overrides variables that are already exported.
    """
    env_path = find_dotenv(filename=".env", usecwd=True)
    layer: dict[str, str] = {}
    if env_path:
        layer.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
    layer.update(os.environ if environ is None else environ)
    return layer


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Config file must be a YAML mapping")
    return raw


def load_settings(
    config_path: Path | None,
    *,
    flags: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    file_data = load_config_file(config_path) if config_path else {}
    return resolve_settings(
        file_data,
        env=environment_layer(environ),
        flags=flags or {},
        config_path=config_path,
    )


def resolve_settings(
    file_data: Mapping[str, Any],
    *,
    env: Mapping[str, str],
    flags: Mapping[str, Any],
    config_path: Path | None = None,
) -> Settings:
    """Layer settings: built-in default < config file < SERVE_PROBE_* env < CLI flag."""
    env_layer = _env_overrides(env)
    flag_layer = _flag_overrides(flags)

    profile = str(
        flag_layer.get("profile") or env_layer.get("profile") or file_data.get("profile") or "stress"
    ).strip().lower()
    if profile not in PROFILES:
        raise ConfigError(f"Unknown profile: {profile} (expected one of: {', '.join(PROFILES)})")

    merged = _deep_merge(BASE_DEFAULTS, PROFILE_DEFAULTS[profile])
    merged = _deep_merge(merged, dict(file_data))
    for dotted, value in env_layer.items():
        _set_dotted(merged, dotted, value)
    for dotted, value in flag_layer.items():
        _set_dotted(merged, dotted, value)

    return _build_settings(merged, profile=profile, env=env, config_path=config_path)


def _build_settings(
    raw: dict[str, Any],
    *,
    profile: str,
    env: Mapping[str, str],
    config_path: Path | None,
) -> Settings:
    base_dir = config_path.parent if config_path else Path.cwd()
    known = set(known_backends())

    framework = str(raw.get("framework") or "").strip().lower()
    if framework not in known:
        raise ConfigError(f"Unknown framework: {framework} (expected one of: {', '.join(sorted(known))})")

    model_texts = _parse_str_list(raw.get("models"), "models")
    model_path = str((raw.get("server") or {}).get("model_path") or "").strip()
    if not model_texts and model_path:
        model_texts = [model_path]
    if not model_texts:
        raise ConfigError("Model not specified. Set models (or server.model_path) in config or use --models")
    targets = tuple(
        parse_target_spec(t, default_framework=framework, known_frameworks=known) for t in model_texts
    )

    docker_raw = raw.get("docker") or {}
    image = str(docker_raw.get("image") or "").strip()
    if not image:
        raise ConfigError("Docker image not specified. Set docker.image in config or use --image")
    docker = DockerSettings(
        image=image,
        shm_size=str(docker_raw.get("shm_size") or "128G"),
        network=str(docker_raw.get("network") or "host"),
        devices=tuple(_parse_str_list(docker_raw.get("devices"), "docker.devices")),
        memlock=_parse_optional_int(docker_raw.get("memlock"), "docker.memlock"),
        entrypoint=_optional_str(docker_raw.get("entrypoint")),
        volumes=tuple(_parse_volumes(docker_raw.get("volumes"), base_dir)),
    )

    test_raw = raw.get("test") or {}
    endpoint_modes = tuple(
        m.lower() for m in _parse_str_list(test_raw.get("endpoint_modes"), "test.endpoint_modes")
    )
    if not endpoint_modes or any(m not in ENDPOINT_MODES for m in endpoint_modes):
        raise ConfigError(f"test.endpoint_modes must be a non-empty subset of {list(ENDPOINT_MODES)}")

    loops = _parse_int(test_raw.get("num_loops"), "test.num_loops")
    if loops < 1:
        raise ConfigError("test.num_loops must be >= 1")

    timeouts_raw = raw.get("timeouts") or {}
    timeouts = Timeouts(
        startup_s=_parse_positive_float(timeouts_raw.get("startup"), "timeouts.startup"),
        container_s=_parse_positive_float(timeouts_raw.get("container"), "timeouts.container"),
        prompt_s=_parse_positive_float(timeouts_raw.get("prompt"), "timeouts.prompt"),
        probe_s=_parse_positive_float(timeouts_raw.get("probe"), "timeouts.probe"),
        poll_interval_s=_parse_positive_float(timeouts_raw.get("poll_interval"), "timeouts.poll_interval"),
    )
    if timeouts.container_s <= timeouts.startup_s:
        raise ConfigError("timeouts.container must be longer than timeouts.startup")

    success_pattern = _optional_str(test_raw.get("success_pattern"))
    if success_pattern:
        try:
            re.compile(success_pattern)
        except re.error as e:
            raise ConfigError(f"Invalid test.success_pattern {success_pattern!r}: {e}") from e

    prompts, default_params, extra_params = _resolve_prompts(raw, profile=profile, base_dir=base_dir)
    prompts = expand_prompts(prompts, _parse_optional_int(test_raw.get("prompts_per_loop"), "test.prompts_per_loop"))

    endpoint_params = raw.get("endpoint_params") or {}
    if not isinstance(endpoint_params, dict) or not all(isinstance(v, dict) for v in endpoint_params.values()):
        raise ConfigError("endpoint_params must map endpoint mode to a parameter mapping")

    cache_raw = raw.get("cache") or {}
    cache_mode = str(cache_raw.get("mode") or "none").strip().lower()
    if cache_mode not in {"volume", "workspace", "none"}:
        raise ConfigError("cache.mode must be one of: volume, workspace, none")
    cache = CacheSettings(
        mode=cache_mode,
        base_dir=Path(os.path.expandvars(str(cache_raw.get("base_dir") or "~"))).expanduser(),
        mounts=tuple(_parse_str_list(cache_raw.get("mounts"), "cache.mounts")),
    )

    server_raw = raw.get("server") or {}
    port = _parse_int(server_raw.get("port"), "server.port")
    if not 0 < port < 65536:
        raise ConfigError(f"server.port out of range: {port}")

    output_dir = Path(str((raw.get("output") or {}).get("dir") or "runs")).expanduser()
    if not output_dir.is_absolute():
        output_dir = (base_dir / output_dir) if config_path else output_dir

    return Settings(
        profile=profile,
        framework=framework,
        targets=targets,
        endpoint_modes=endpoint_modes,
        loops=loops,
        host=str(server_raw.get("host") or "localhost"),
        port=port,
        docker=docker,
        timeouts=timeouts,
        server_args=tuple(_parse_mapping(raw.get("server_args"), "server_args").items()),
        env=tuple(_resolve_env(raw, base_dir)),
        prompts=prompts,
        default_params=default_params,
        extra_params=extra_params,
        endpoint_params={str(k): dict(v) for k, v in endpoint_params.items()},
        system_prompt=_optional_str(raw.get("system_prompt")),
        success_pattern=success_pattern,
        error_patterns=tuple(_parse_str_list(raw.get("error_patterns"), "error_patterns")),
        cooldown_s=_parse_float(test_raw.get("cooldown"), "test.cooldown"),
        log_grace_s=_parse_float(test_raw.get("log_grace"), "test.log_grace"),
        cache=cache,
        use_launch_script=bool((raw.get("launch") or {}).get("use_script")),
        output_dir=output_dir,
        require_hf_token=bool(raw.get("require_hf_token")),
        hf_token=env.get("HF_TOKEN") or None,
        config_path=config_path,
    )


def _resolve_prompts(
    raw: Mapping[str, Any], *, profile: str, base_dir: Path
) -> tuple[tuple[Prompt, ...], dict[str, Any], dict[str, Any]]:
    prompts: tuple[Prompt, ...] = SANITY_PROMPTS if profile == "sanity" else (FALLBACK_PROMPT,)
    default_params = dict(DEFAULT_PARAMS)
    extra_params: dict[str, Any] = {}

    prompts_file = raw.get("prompts_file")
    if prompts_file:
        path = (base_dir / str(prompts_file)).resolve()
        if not path.exists():
            raise ConfigError(f"prompts_file not found: {path}")
        try:
            prompt_set = load_prompt_file(path)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        prompts = prompt_set.prompts
        default_params.update(prompt_set.default_params)
        extra_params.update(prompt_set.extra_params)

    try:
        inline = parse_prompts(raw.get("prompts"))
    except ValueError as e:
        raise ConfigError(str(e)) from e
    if inline:
        prompts = tuple(inline)

    default_params.update(_parse_mapping(raw.get("default_params"), "default_params"))
    extra_params.update(_parse_mapping(raw.get("extra_params"), "extra_params"))
    return prompts, default_params, extra_params


def _resolve_env(raw: Mapping[str, Any], base_dir: Path) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    env_file = raw.get("env_file")
    if env_file:
        path = (base_dir / str(env_file)).resolve()
        if not path.exists():
            raise ConfigError(f"env_file not found: {path}")
        pairs.extend(parse_env_lines(path.read_text(encoding="utf-8")))
    pairs.extend((str(k), str(v)) for k, v in _parse_mapping(raw.get("env"), "env").items())
    return pairs


def parse_env_lines(text: str) -> list[tuple[str, str]]:
    """Parse `KEY=value` lines (envs.txt style); blanks and `#` comments are skipped."""
    pairs: list[tuple[str, str]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigError(f"Expected KEY=value in env file, got: {line!r}")
        key, value = line.split("=", 1)
        pairs.append((key.strip(), value.strip()))
    return pairs


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for suffix, dotted in ENV_OVERRIDES.items():
        value = env.get(ENV_PREFIX + suffix)
        if value is not None and value.strip():
            out[dotted] = value.strip()
    return out


def _flag_overrides(flags: Mapping[str, Any]) -> dict[str, Any]:
    return {
        dotted: flags[name]
        for name, dotted in FLAG_OVERRIDES.items()
        if flags.get(name) not in (None, "")
    }


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), Mapping):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _set_dotted(data: dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def _parse_volumes(value: Any, base_dir: Path) -> list[Mount]:
    mounts: list[Mount] = []
    for item in _parse_list(value, "docker.volumes"):
        if isinstance(item, str):
            parts = item.split(":")
            if len(parts) not in (2, 3):
                raise ConfigError(f"Volume must be 'source:target[:ro]', got {item!r}")
            source, target = parts[0], parts[1]
            read_only = len(parts) == 3 and parts[2] == "ro"
        elif isinstance(item, dict):
            source = str(item.get("source") or "")
            target = str(item.get("target") or "")
            read_only = bool(item.get("read_only", False))
        else:
            raise ConfigError(f"Unsupported volume entry: {item!r}")
        if not source or not target:
            raise ConfigError(f"Volume needs source and target: {item!r}")
        if source.startswith((".", "~")) or "/" in source:
            source = str((base_dir / Path(source).expanduser()).resolve())
        mounts.append(Mount(source=source, target=target, read_only=read_only))
    return mounts


def _parse_list(value: Any, key: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise ConfigError(f"Expected {key} to be a list")


def _parse_str_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [x.strip() for x in value.split(",") if x.strip()]
    if isinstance(value, list):
        return [str(x).strip() for x in value if str(x).strip()]
    raise ConfigError(f"Expected {key} to be a list or comma-separated string")


def _parse_mapping(value: Any, key: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Expected {key} to be a mapping")
    return dict(value)


def _parse_int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Expected {key} to be an integer, got {value!r}") from e


def _parse_optional_int(value: Any, key: str) -> int | None:
    if value is None or value == "":
        return None
    return _parse_int(value, key)


def _parse_float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Expected {key} to be a number, got {value!r}") from e


def _parse_positive_float(value: Any, key: str) -> float:
    parsed = _parse_float(value, key)
    if parsed <= 0:
        raise ConfigError(f"{key} must be > 0")
    return parsed


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
