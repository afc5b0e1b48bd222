from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence

from serve_probe.adapters.types import (
    Mount,
    ParsedResponse,
    parse_error,
    render_flags,
    write_launch_script,
)


# vLLM rejects or ignores most SGLang-style sampling knobs; keep only these.
SUPPORTED_PARAMS = (
    "stream",
    "max_tokens",
    "temperature",
    "top_p",
    "top_k",
    "presence_penalty",
    "frequency_penalty",
    "stop",
    "n",
    "seed",
)

RESERVED_ARGS = {"port", "model"}


class VLLMAdapter:
    name = "vllm"

    def build_launch_command(
        self, model: str, port: int, launch_args: Sequence[tuple[str, Any]]
    ) -> list[str]:
        return ["vllm", "serve", model, "--port", str(port), *render_flags(launch_args)]

    def health_path(self) -> str:
        return "/health"

    def chat_path(self) -> str:
        return "/v1/chat/completions"

    def completion_path(self) -> str:
        return "/v1/completions"

    def build_payload(
        self,
        *,
        mode: str,
        model: str,
        prompt: str,
        params: dict[str, Any],
        extra_params: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        # extra_params are SGLang extensions; vLLM never sees them.
        filtered = {k: params[k] for k in SUPPORTED_PARAMS if k in params}

        if mode == "completion":
            return {"model": model, "prompt": prompt, **filtered}

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {"model": model, "messages": messages, **filtered}

    def parse_response(self, mode: str, raw: str) -> ParsedResponse:
        try:
            data = json.loads(raw)
            choice = data["choices"][0]
            if mode == "completion":
                content = choice["text"]
            else:
                content = choice["message"]["content"]
        except Exception as e:
            return parse_error(raw, e)
        return ParsedResponse(content=str(content or ""), raw=raw)

    def docker_entrypoint(self) -> str | None:
        # vLLM images ship a `vllm` entrypoint; the launch command is run by bash instead.
        return "/bin/bash"

    def extra_mounts(self) -> list[Mount]:
        return []

    def validate_config(self, settings: Any) -> list[str]:
        problems = []
        for key, _value in settings.server_args:
            if key.lstrip("-") in RESERVED_ARGS:
                problems.append(
                    f"server_args.{key} is set by the vllm adapter; remove it from server_args"
                )
        return problems

    def build_launch_script(
        self,
        model: str,
        port: int,
        launch_args: Sequence[tuple[str, Any]],
        directory: Path,
    ) -> Path:
        argv = self.build_launch_command(model, port, launch_args)
        return write_launch_script(directory, argv, prefix="vllm")
