from __future__ import annotations

import argparse
from pathlib import Path

from rich.console import Console

from serve_probe.core.config import PROFILES, FLAG_OVERRIDES, load_settings
from serve_probe.core.console import RunLog
from serve_probe.core.docker import DockerRuntime
from serve_probe.core.errors import ConfigError
from serve_probe.core.run import describe_plan, run_probe
from serve_probe.reporting.html_report import build_html_report


def _flags(args: argparse.Namespace) -> dict:
    return {k: getattr(args, k) for k in FLAG_OVERRIDES if getattr(args, k, None) is not None}


def _config_path(args: argparse.Namespace) -> Path | None:
    return Path(args.config) if args.config else None


def _print_plan(console: Console, args: argparse.Namespace) -> int:
    settings = load_settings(_config_path(args), flags=_flags(args))
    console.print("=" * 60)
    console.print("  [bold]DRY RUN[/bold] - Configuration Summary")
    console.print("=" * 60)
    for line in describe_plan(settings):
        console.print(line, markup=False, highlight=False)
    console.print("=" * 60)
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    console = Console()
    if args.dry_run:
        return _print_plan(console, args)

    settings = load_settings(_config_path(args), flags=_flags(args))
    runtime = DockerRuntime()
    if not runtime.available():
        raise ConfigError("docker is required but was not found on PATH")

    result = run_probe(settings, runtime=runtime, log=RunLog(console))
    summary = result["summary"]
    console.print(
        f"Wrote {result['results_path']} (trials={summary.total}, pass rate={summary.pass_rate}%)"
    )
    return int(result["exit_code"])


def _cmd_plan(args: argparse.Namespace) -> int:
    return _print_plan(Console(), args)


def _cmd_report(args: argparse.Namespace) -> int:
    console = Console()
    in_path = Path(args.input)
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    report = build_html_report(jsonl_path=in_path, out_html_path=out_path, console=console)

    console.print(
        f"Wrote report to {out_path} (records={report['n_records']}, groups={report['n_groups']})"
    )
    return 0


def _add_settings_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="Path to YAML config")
    p.add_argument("--profile", choices=PROFILES, default=None, help="Defaults profile (stress or sanity)")
    p.add_argument("--loops", type=int, default=None, help="Number of trial loops per target/mode")
    p.add_argument("--image", default=None, help="Docker image; overrides config")
    p.add_argument("--port", type=int, default=None, help="Server port; overrides config")
    p.add_argument("--framework", default=None, help="Default serving framework (vllm, sglang)")
    p.add_argument(
        "--models",
        default=None,
        help="Comma-separated [framework:]model targets; overrides config",
    )
    p.add_argument("--output-dir", dest="output_dir", default=None, help="Directory for run folders")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="serve-probe")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Launch serving containers and probe them")
    _add_settings_args(p_run)
    p_run.add_argument("--dry-run", action="store_true", help="Print the resolved plan and exit")
    p_run.set_defaults(func=_cmd_run)

    p_plan = sub.add_parser("plan", help="Print the resolved configuration and server commands")
    _add_settings_args(p_plan)
    p_plan.set_defaults(func=_cmd_plan)

    p_report = sub.add_parser("report", help="Generate an interactive HTML report")
    p_report.add_argument("--in", dest="input", required=True, help="Input results JSONL path")
    p_report.add_argument("--out", required=True, help="Output HTML path")
    p_report.set_defaults(func=_cmd_report)

    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except ConfigError as e:
        Console(stderr=True).print(f"[red]ERROR:[/red] {e}", highlight=False)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
