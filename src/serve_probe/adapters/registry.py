from __future__ import annotations

from typing import Callable, Iterable

from serve_probe.adapters.sglang import SGLangAdapter
from serve_probe.adapters.types import BackendAdapter
from serve_probe.adapters.vllm import VLLMAdapter
from serve_probe.core.errors import ConfigError


BACKENDS: dict[str, Callable[[], BackendAdapter]] = {
    "vllm": VLLMAdapter,
    "sglang": SGLangAdapter,
}

MANDATORY_CAPABILITIES = (
    "build_launch_command",
    "health_path",
    "chat_path",
    "build_payload",
    "parse_response",
)


def known_backends() -> list[str]:
    return sorted(BACKENDS)


def get_adapter(name: str, *, endpoint_modes: Iterable[str] = ("chat",)) -> BackendAdapter:
    key = name.strip().lower()
    factory = BACKENDS.get(key)
    if factory is None:
        raise ConfigError(
            f"Unknown framework: {name!r} (expected one of: {', '.join(known_backends())})"
        )
    adapter = factory()
    check_capabilities(adapter, endpoint_modes=endpoint_modes)
    return adapter


def check_capabilities(adapter: object, *, endpoint_modes: Iterable[str] = ("chat",)) -> None:
    required = list(MANDATORY_CAPABILITIES)
    if "completion" in set(endpoint_modes):
        required.append("completion_path")

    label = getattr(adapter, "name", type(adapter).__name__)
    for capability in required:
        if not callable(getattr(adapter, capability, None)):
            raise ConfigError(f"Backend '{label}' is missing required capability: {capability}")
