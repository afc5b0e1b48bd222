from __future__ import annotations

import pytest

from serve_probe.core.errors import ConfigError
from serve_probe.core.model_spec import TargetSpec, parse_target_spec, safe_name

KNOWN = {"vllm", "sglang"}


def test_parse_target_spec_with_framework() -> None:
    result = parse_target_spec("sglang:Qwen/Qwen3-8B", default_framework="vllm", known_frameworks=KNOWN)
    assert result.framework == "sglang"
    assert result.model == "Qwen/Qwen3-8B"
    assert result.target_spec == "sglang:Qwen/Qwen3-8B"


def test_parse_target_spec_bare_model_uses_default() -> None:
    result = parse_target_spec("facebook/opt-125m", default_framework="vllm", known_frameworks=KNOWN)
    assert result.framework == "vllm"
    assert result.model == "facebook/opt-125m"


def test_parse_target_spec_uppercase_framework() -> None:
    result = parse_target_spec("VLLM:facebook/opt-125m", default_framework="sglang", known_frameworks=KNOWN)
    assert result.framework == "vllm"


def test_parse_target_spec_keeps_colon_in_model_id() -> None:
    result = parse_target_spec("org/model:tag", default_framework="vllm", known_frameworks=KNOWN)
    assert result.framework == "vllm"
    assert result.model == "org/model:tag"


def test_parse_target_spec_unknown_default_raises() -> None:
    with pytest.raises(ConfigError, match="Unknown framework"):
        parse_target_spec("some/model", default_framework="tgi", known_frameworks=KNOWN)


def test_parse_target_spec_empty_model_raises() -> None:
    with pytest.raises(ConfigError, match="Model name is required"):
        parse_target_spec("vllm:", default_framework="vllm", known_frameworks=KNOWN)


def test_safe_model_for_container_names() -> None:
    spec = TargetSpec(framework="vllm", model="meta-llama/Llama-3.1-8B:fp8")
    assert spec.safe_model == "meta-llama_Llama-3.1-8B_fp8"
    assert safe_name("a b/c") == "a_b_c"
