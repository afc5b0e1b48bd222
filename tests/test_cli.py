from __future__ import annotations

from serve_probe import cli


def test_config_error_exits_with_status_2(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    code = cli.main(["plan", "--config", str(tmp_path / "missing.yaml")])
    assert code == 2


def test_plan_prints_server_command(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SERVE_PROBE_PORT", raising=False)
    cfg = tmp_path / "c.yaml"
    cfg.write_text("models: [facebook/opt-125m]\ndocker: {image: img:1}\n", encoding="utf-8")

    code = cli.main(["run", "--config", str(cfg), "--port", "7000", "--dry-run"])

    assert code == 0
    out = capsys.readouterr().out
    assert "vllm serve facebook/opt-125m --port 7000" in out


def test_run_without_docker_is_a_config_error(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HF_TOKEN", "hf_x")
    monkeypatch.setattr(cli.DockerRuntime, "available", lambda self: False)
    cfg = tmp_path / "c.yaml"
    cfg.write_text("models: [m]\ndocker: {image: img:1}\n", encoding="utf-8")

    assert cli.main(["run", "--config", str(cfg)]) == 2
