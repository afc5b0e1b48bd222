from __future__ import annotations

import json
from dataclasses import dataclass, field
from itertools import cycle, islice
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class Prompt:
    content: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptSet:
    prompts: tuple[Prompt, ...]
    default_params: dict[str, Any]
    extra_params: dict[str, Any]


SANITY_SYSTEM_PROMPT = (
    "You are a helpful assistant. Respond only in English. Do not use any other languages."
)

SANITY_PROMPTS = (
    Prompt("What is the fastest coastal animal"),
    Prompt("What is the fastest coastal animal"),
    Prompt(
        "Explain electrons and the role they play in power grids in the style of a "
        "Shakespearean drama, ensuring each sentence contains at least one metaphor "
        "related to the natural world"
    ),
    Prompt(
        "Explain electrons and the role they play in power grids in the style of a "
        "Shakespearean drama, ensuring each sentence contains at least one metaphor "
        "related to the natural world"
    ),
)

DEFAULT_PARAMS: dict[str, Any] = {"stream": False, "max_tokens": 512}
FALLBACK_PROMPT = Prompt("Hello, how are you?")


def load_prompt_file(path: Path) -> PromptSet:
    """Read a prompts.json file: `{default_params, extra_params, prompts: [{content, params}]}`."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompts file must be a JSON object: {path}")

    prompts = tuple(parse_prompts(raw.get("prompts")))
    default_params = raw.get("default_params") or {}
    extra_params = raw.get("extra_params") or {}
    if not isinstance(default_params, dict) or not isinstance(extra_params, dict):
        raise ValueError(f"default_params and extra_params must be objects in {path}")

    return PromptSet(
        prompts=prompts or (FALLBACK_PROMPT,),
        default_params=dict(default_params),
        extra_params=dict(extra_params),
    )


def parse_prompts(value: Any) -> list[Prompt]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("Expected prompts to be a list")

    out: list[Prompt] = []
    for item in value:
        if isinstance(item, str):
            out.append(Prompt(item))
        elif isinstance(item, dict):
            content = str(item.get("content", "")).strip()
            if not content:
                raise ValueError("Every prompt needs non-empty content")
            params = item.get("params") or {}
            if not isinstance(params, dict):
                raise ValueError("Prompt params must be a mapping")
            out.append(Prompt(content, dict(params)))
        else:
            raise ValueError(f"Unsupported prompt entry: {item!r}")
    return out


def expand_prompts(prompts: tuple[Prompt, ...], count: int | None) -> tuple[Prompt, ...]:
    # A fixed per-trial count cycles through the configured prompts.
    if not count or count <= 0:
        return prompts
    return tuple(islice(cycle(prompts), count))


def merge_params(
    default_params: dict[str, Any],
    endpoint_params: dict[str, Any] | None,
    prompt: Prompt,
) -> dict[str, Any]:
    return {**default_params, **(endpoint_params or {}), **prompt.params}
