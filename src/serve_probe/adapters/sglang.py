from __future__ import annotations

import json
from typing import Any, Sequence

from serve_probe.adapters.types import ParsedResponse, parse_error, render_flags


OPENAI_PARAMS = {
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
    "logprobs",
    "top_logprobs",
    "response_format",
}

SGLANG_PARAMS = {
    "min_p",
    "min_tokens",
    "repetition_penalty",
    "regex",
    "json_schema",
    "ebnf",
    "ignore_eos",
    "skip_special_tokens",
    "no_stop_trim",
    "stop_token_ids",
    "separate_reasoning",
    "stream_reasoning",
    "chat_template_kwargs",
    "lora_path",
}

RESERVED_ARGS = {"port", "model-path", "model_path", "host"}


class SGLangAdapter:
    name = "sglang"

    def build_launch_command(
        self, model: str, port: int, launch_args: Sequence[tuple[str, Any]]
    ) -> list[str]:
        return [
            "python3",
            "-m",
            "sglang.launch_server",
            "--model-path",
            model,
            "--host",
            "0.0.0.0",
            "--port",
            str(port),
            *render_flags(launch_args),
        ]

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
        merged = {**params, **(extra_params or {})}
        accepted = OPENAI_PARAMS | SGLANG_PARAMS
        filtered = {k: v for k, v in merged.items() if k in accepted}

        if mode == "completion":
            filtered.pop("chat_template_kwargs", None)
            filtered.pop("separate_reasoning", None)
            filtered.pop("stream_reasoning", None)
            return {"model": model, "prompt": prompt, **filtered}

        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {"model": model, "messages": messages, **filtered}

    def parse_response(self, mode: str, raw: str) -> ParsedResponse:
        try:
            data = json.loads(raw)
            choice = (data.get("choices") or [{}])[0]
            if mode == "completion":
                content = choice.get("text", "")
            else:
                content = (choice.get("message") or {}).get("content", "")
        except Exception as e:
            return parse_error(raw, e)
        return ParsedResponse(content=str(content or ""), raw=raw)

    def validate_config(self, settings: Any) -> list[str]:
        problems = []
        for key, _value in settings.server_args:
            if key.lstrip("-") in RESERVED_ARGS:
                problems.append(
                    f"server_args.{key} is set by the sglang adapter; remove it from server_args"
                )
        return problems
