from __future__ import annotations

import json
from pathlib import Path

import pytest

from serve_probe.core.prompts import (
    FALLBACK_PROMPT,
    Prompt,
    expand_prompts,
    load_prompt_file,
    merge_params,
    parse_prompts,
)


def test_load_prompt_file_reads_params(tmp_path: Path) -> None:
    path = tmp_path / "prompts.json"
    path.write_text(
        json.dumps(
            {
                "default_params": {"max_tokens": 64},
                "extra_params": {"min_p": 0.1},
                "prompts": [
                    {"content": "Is summer hot?", "params": {"temperature": 0.2}},
                    "Say hi",
                ],
            }
        ),
        encoding="utf-8",
    )

    ps = load_prompt_file(path)
    assert [p.content for p in ps.prompts] == ["Is summer hot?", "Say hi"]
    assert ps.prompts[0].params == {"temperature": 0.2}
    assert ps.default_params == {"max_tokens": 64}
    assert ps.extra_params == {"min_p": 0.1}


def test_load_prompt_file_without_prompts_uses_fallback(tmp_path: Path) -> None:
    path = tmp_path / "prompts.json"
    path.write_text("{}", encoding="utf-8")
    assert load_prompt_file(path).prompts == (FALLBACK_PROMPT,)


def test_parse_prompts_rejects_empty_content() -> None:
    with pytest.raises(ValueError, match="non-empty content"):
        parse_prompts([{"content": "  "}])


def test_expand_prompts_cycles_to_count() -> None:
    prompts = (Prompt("a"), Prompt("b"))
    assert [p.content for p in expand_prompts(prompts, 5)] == ["a", "b", "a", "b", "a"]
    assert expand_prompts(prompts, None) == prompts


def test_merge_params_prompt_wins() -> None:
    merged = merge_params(
        {"max_tokens": 512, "temperature": 1.0},
        {"temperature": 0},
        Prompt("x", {"max_tokens": 8}),
    )
    assert merged == {"max_tokens": 8, "temperature": 0}
