from __future__ import annotations

import html as html_lib
from pathlib import Path
from typing import Any

import plotly.colors
import plotly.graph_objects as go
from plotly.subplots import make_subplots
from rich.console import Console

from serve_probe.core.storage import read_jsonl
from serve_probe.core.verdicts import TrialVerdict


VERDICT_COLORS = {
    TrialVerdict.SUCCESS.value: "#2ca02c",
    TrialVerdict.PATTERN_MISMATCH.value: "#bcbd22",
    TrialVerdict.LOG_ERROR_PATTERN.value: "#ff7f0e",
    TrialVerdict.PARSE_ERROR.value: "#9467bd",
    TrialVerdict.NO_RESPONSE.value: "#8c564b",
    TrialVerdict.NO_CHAT_TEMPLATE.value: "#7f7f7f",
    TrialVerdict.SERVER_START_TIMEOUT.value: "#d62728",
}


def build_html_report(*, jsonl_path: Path, out_html_path: Path, console: Console) -> dict[str, Any]:
    rows = list(read_jsonl(jsonl_path))
    if not rows:
        raise ValueError("No records found")

    # One entry per prompt exchange; trial verdicts are deduplicated by trial_id.
    groups: dict[tuple[str, str, str], dict[str, Any]] = {}
    skipped = 0
    for r in rows:
        try:
            key = (str(r["framework"]), str(r["model"]), str(r["endpoint"]))
            trial_id = str(r["trial_id"])
            trial_verdict = str(r["trial_verdict"])
            status = str(r["status"])
        except KeyError:
            skipped += 1
            continue
        g = groups.setdefault(key, {"trials": {}, "prompts": {}})
        g["trials"][trial_id] = trial_verdict
        g["prompts"][status] = g["prompts"].get(status, 0) + 1

    if skipped:
        console.print(f"[yellow]WARNING:[/yellow] skipped {skipped} malformed records")
    if not groups:
        raise ValueError("No usable records found")

    def _label(framework: str, model: str, endpoint: str) -> str:
        return f"{framework}:{model} ({endpoint})"

    keys = sorted(groups)
    labels = [_label(*k) for k in keys]

    trial_counts: dict[str, list[int]] = {v.value: [] for v in TrialVerdict}
    prompt_counts: dict[str, list[int]] = {v.value: [] for v in TrialVerdict}
    pass_rates: list[int] = []
    n_trials: list[int] = []
    for k in keys:
        g = groups[k]
        verdicts = list(g["trials"].values())
        for v in trial_counts:
            trial_counts[v].append(sum(1 for x in verdicts if x == v))
            prompt_counts[v].append(g["prompts"].get(v, 0))
        total = len(verdicts)
        n_trials.append(total)
        successes = sum(1 for x in verdicts if x == TrialVerdict.SUCCESS.value)
        pass_rates.append(successes * 100 // total if total else 0)

    fallback = plotly.colors.qualitative.Plotly

    # Figure 1: stacked trial verdicts per group, with pass rate alongside.
    fig_trials = make_subplots(
        rows=1,
        cols=2,
        subplot_titles=("Trial verdicts", "Pass rate"),
        column_widths=[0.65, 0.35],
        shared_yaxes=True,
    )
    for idx, (verdict, counts) in enumerate(trial_counts.items()):
        if not any(counts):
            continue
        fig_trials.add_trace(
            go.Bar(
                y=labels,
                x=counts,
                orientation="h",
                name=verdict,
                legendgroup=verdict,
                marker=dict(color=VERDICT_COLORS.get(verdict, fallback[idx % len(fallback)])),
                hovertemplate="%{y}<br>" + verdict + "=%{x}<extra></extra>",
            ),
            row=1,
            col=1,
        )
    fig_trials.add_trace(
        go.Bar(
            y=labels,
            x=pass_rates,
            orientation="h",
            name="pass rate",
            showlegend=False,
            marker=dict(color=VERDICT_COLORS[TrialVerdict.SUCCESS.value]),
            customdata=n_trials,
            hovertemplate="%{y}<br>Pass rate=%{x}%<br>trials=%{customdata}<extra></extra>",
        ),
        row=1,
        col=2,
    )
    fig_trials.update_layout(
        title=f"serve-probe report: {jsonl_path.name}",
        barmode="stack",
        template="plotly_white",
        height=max(360, 60 * len(labels) + 160),
        font=dict(size=14),
        legend=dict(orientation="h", yanchor="bottom", y=1.05, xanchor="left", x=0),
        margin=dict(l=60, r=20, t=110, b=60),
    )
    fig_trials.update_xaxes(title_text="trials", row=1, col=1)
    fig_trials.update_xaxes(title_text="%", range=[0, 100], row=1, col=2)

    # Figure 2: per-prompt exchange statuses.
    fig_prompts = go.Figure()
    for idx, (verdict, counts) in enumerate(prompt_counts.items()):
        if not any(counts):
            continue
        fig_prompts.add_trace(
            go.Bar(
                y=labels,
                x=counts,
                orientation="h",
                name=verdict,
                marker=dict(color=VERDICT_COLORS.get(verdict, fallback[idx % len(fallback)])),
                hovertemplate="%{y}<br>" + verdict + "=%{x}<extra></extra>",
            )
        )
    fig_prompts.update_layout(
        title="Prompt exchange statuses",
        barmode="stack",
        template="plotly_white",
        height=max(320, 60 * len(labels) + 120),
        font=dict(size=14),
        legend=dict(orientation="h", yanchor="bottom", y=1.05, xanchor="left", x=0),
        margin=dict(l=60, r=20, t=90, b=60),
    )
    fig_prompts.update_xaxes(title_text="prompts")

    name = html_lib.escape(jsonl_path.name)
    n_trials_total = sum(n_trials)
    html = "".join(
        [
            "<!doctype html>",
            "<html><head><meta charset='utf-8' />",
            f"<title>serve-probe report: {name}</title>",
            "<meta name='viewport' content='width=device-width, initial-scale=1' />",
            "<style>body{max-width:1200px;margin:0 auto;padding:16px;font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif}</style>",
            "</head><body>",
            "<h1 style='margin:0 0 12px 0'>serve-probe report</h1>",
            f"<div style='color:#444;margin:0 0 18px 0'>Source: {name} &nbsp;·&nbsp; Records: {len(rows)} &nbsp;·&nbsp; Trials: {n_trials_total} &nbsp;·&nbsp; Groups: {len(groups)}</div>",
            fig_trials.to_html(full_html=False, include_plotlyjs="cdn"),
            "<div style='height:10px'></div>",
            fig_prompts.to_html(full_html=False, include_plotlyjs=False),
            "</body></html>",
        ]
    )
    out_html_path.write_text(html, encoding="utf-8")

    return {"n_records": len(rows), "n_groups": len(groups), "n_trials": n_trials_total}
