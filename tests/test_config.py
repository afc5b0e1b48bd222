from __future__ import annotations

import json
from pathlib import Path

import pytest

from serve_probe.adapters.vllm import VLLMAdapter
from serve_probe.core.config import load_settings, parse_env_lines, resolve_settings
from serve_probe.core.errors import ConfigError
from serve_probe.core.prompts import SANITY_PROMPTS


BASE = {"models": ["facebook/opt-125m"], "docker": {"image": "img:1"}}


def test_port_precedence_flag_over_config_over_default() -> None:
    assert resolve_settings(BASE, env={}, flags={}).port == 8000
    with_config = {**BASE, "server": {"port": 9000}}
    assert resolve_settings(with_config, env={}, flags={}).port == 9000
    assert resolve_settings(with_config, env={}, flags={"port": 7000}).port == 7000


def test_env_overrides_config_but_not_flags() -> None:
    env = {"SERVE_PROBE_LOOPS": "3", "SERVE_PROBE_IMAGE": "img:env"}
    s = resolve_settings({**BASE, "test": {"num_loops": 20}}, env=env, flags={})
    assert s.loops == 3
    assert s.docker.image == "img:env"

    s = resolve_settings(BASE, env=env, flags={"loops": 5})
    assert s.loops == 5


def test_models_flag_parses_framework_prefixes() -> None:
    s = resolve_settings(BASE, env={}, flags={"models": "sglang:Qwen/Qwen3-8B, facebook/opt-125m"})
    assert [t.target_spec for t in s.targets] == ["sglang:Qwen/Qwen3-8B", "vllm:facebook/opt-125m"]


def test_model_path_is_a_fallback_target() -> None:
    s = resolve_settings(
        {"docker": {"image": "img:1"}, "server": {"model_path": "org/m"}}, env={}, flags={}
    )
    assert s.targets[0].model == "org/m"


def test_sanity_profile_defaults() -> None:
    s = resolve_settings({"models": ["a/b", "c/d"]}, env={}, flags={"profile": "sanity"})
    assert s.profile == "sanity"
    assert s.endpoint_modes == ("chat", "completion")
    assert s.loops == 1
    assert s.prompts == SANITY_PROMPTS
    assert s.cache.mode == "volume"
    assert s.use_launch_script is True
    assert s.endpoint_params["completion"] == {"temperature": 0.7}
    assert s.docker.image.startswith("vllm/vllm-openai-rocm")


def test_stress_prompts_per_loop_cycles() -> None:
    s = resolve_settings({**BASE, "prompts": ["a", "b"], "test": {"prompts_per_loop": 3}}, env={}, flags={})
    assert [p.content for p in s.prompts] == ["a", "b", "a"]


@pytest.mark.parametrize(
    "data, match",
    [
        ({"docker": {"image": "img:1"}}, "Model not specified"),
        ({"models": ["m"]}, "Docker image not specified"),
        ({**BASE, "framework": "tgi"}, "Unknown framework"),
        ({**BASE, "test": {"success_pattern": "(unclosed"}}, "success_pattern"),
        ({**BASE, "test": {"endpoint_modes": ["embeddings"]}}, "endpoint_modes"),
        ({**BASE, "timeouts": {"startup": 900, "container": 600}}, "timeouts.container"),
        ({**BASE, "cache": {"mode": "nfs"}}, "cache.mode"),
    ],
)
def test_invalid_config_raises(data, match) -> None:
    with pytest.raises(ConfigError, match=match):
        resolve_settings(data, env={}, flags={})


def test_hf_token_comes_from_env() -> None:
    s = resolve_settings(BASE, env={"HF_TOKEN": "hf_abc"}, flags={})
    assert s.hf_token == "hf_abc"


def test_load_settings_reads_yaml_env_file_and_prompts(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "envs.txt").write_text("# comment\nVLLM_USE_V1=1\n\nNCCL_DEBUG=WARN\n", encoding="utf-8")
    (tmp_path / "prompts.json").write_text(
        '{"default_params": {"max_tokens": 32}, "prompts": [{"content": "Is it hot in summer?"}]}',
        encoding="utf-8",
    )
    cfg = tmp_path / "stress.yaml"
    cfg.write_text(
        "\n".join(
            [
                "framework: vllm",
                "models: [facebook/opt-125m]",
                "docker:",
                "  image: vllm/vllm-openai:latest",
                "env_file: envs.txt",
                "prompts_file: prompts.json",
                "server_args:",
                "  tensor-parallel-size: 2",
                "output:",
                "  dir: out",
            ]
        ),
        encoding="utf-8",
    )

    s = load_settings(cfg, environ={})
    assert s.env == (("VLLM_USE_V1", "1"), ("NCCL_DEBUG", "WARN"))
    assert s.env_summary == "VLLM_USE_V1=1; NCCL_DEBUG=WARN"
    assert s.default_params["max_tokens"] == 32
    assert s.server_args == (("tensor-parallel-size", 2),)
    assert s.output_dir == tmp_path / "out"
    assert s.config_path == cfg


def test_dotenv_file_supplies_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("SERVE_PROBE_PORT=9100\nHF_TOKEN=hf_dotenv\n", encoding="utf-8")
    cfg = tmp_path / "c.yaml"
    cfg.write_text("models: [m]\ndocker: {image: img}\n", encoding="utf-8")

    s = load_settings(cfg, environ={})
    assert s.port == 9100
    assert s.hf_token == "hf_dotenv"

    # Exported variables win over the .env file.
    s = load_settings(cfg, environ={"SERVE_PROBE_PORT": "9200"})
    assert s.port == 9200


def test_missing_config_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_settings(tmp_path / "nope.yaml", environ={})


def test_parse_env_lines_rejects_garbage() -> None:
    with pytest.raises(ConfigError):
        parse_env_lines("NOT_AN_ASSIGNMENT\n")


def test_shipped_sanity_config_renders_nested_server_options(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    configs = Path(__file__).resolve().parent.parent / "configs"
    s = load_settings(configs / "sanity.yaml", environ={})

    argv = VLLMAdapter().build_launch_command("Qwen/Qwen3-8B", 8000, s.server_args)
    compilation = json.loads(argv[argv.index("--compilation-config") + 1])
    assert compilation["cudagraph_mode"] == "FULL"
    assert compilation["pass_config"]["fuse_attn_quant"] is True
    assert argv[argv.index("--chat-template") + 1] == "/tmp/fallback_chat_template.jinja"
    assert "--no-enable-prefix-caching" in argv

    (template,) = [m for m in s.docker.volumes if m.target == "/tmp/fallback_chat_template.jinja"]
    assert template.read_only
    assert Path(template.source) == (configs / "fallback_chat_template.jinja").resolve()
    assert Path(template.source).exists()
