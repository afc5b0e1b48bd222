from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

import httpx

from serve_probe.adapters.types import PARSE_ERROR_PREFIX, BackendAdapter
from serve_probe.core.prompts import Prompt, merge_params
from serve_probe.core.records import (
    NO_CHAT_TEMPLATE_TEXT,
    NO_RESPONSE_TEXT,
    ResponseRecord,
)
from serve_probe.core.verdicts import TrialVerdict


CHAT_TEMPLATE_SIGNAL = "chat template"


@dataclass(frozen=True)
class ExerciseOptions:
    mode: str
    model: str
    url: str
    timeout_s: float
    default_params: dict[str, Any]
    endpoint_params: dict[str, Any]
    extra_params: dict[str, Any]
    system_prompt: str | None = None
    success_pattern: str | None = None


def exercise(
    prompts: Sequence[Prompt],
    *,
    adapter: BackendAdapter,
    client: httpx.Client,
    options: ExerciseOptions,
    exchange_log: Path | None = None,
    on_record: Callable[[int, ResponseRecord], None] | None = None,
) -> list[ResponseRecord]:
    """Send every prompt in order and classify each exchange.

    A missing chat template stops the trial: the remaining prompt slots are
    filled with the same verdict so the output keeps one row per prompt.
    """
    records: list[ResponseRecord] = []
    for idx, prompt in enumerate(prompts, start=1):
        params = merge_params(options.default_params, options.endpoint_params, prompt)
        payload = adapter.build_payload(
            mode=options.mode,
            model=options.model,
            prompt=prompt.content,
            params=params,
            extra_params=options.extra_params,
            system_prompt=options.system_prompt,
        )
        raw = post_json(client, options.url, payload, timeout_s=options.timeout_s)
        rec = classify_exchange(prompt, raw, adapter=adapter, options=options)

        if exchange_log is not None:
            _append_exchange(exchange_log, idx, options.url, prompt, raw)
        records.append(rec)
        if on_record is not None:
            on_record(idx, rec)

        if rec.verdict is TrialVerdict.NO_CHAT_TEMPLATE:
            for skipped in prompts[idx:]:
                records.append(
                    ResponseRecord(
                        prompt=skipped,
                        raw_body="",
                        content="",
                        display=rec.display,
                        verdict=TrialVerdict.NO_CHAT_TEMPLATE,
                    )
                )
            break
    return records


def post_json(client: httpx.Client, url: str, payload: dict[str, Any], *, timeout_s: float) -> str:
    """POST and return the body text; empty on timeout or transport failure.

    HTTP error statuses still return their body, since servers explain
    problems such as a missing chat template there.
    """
    try:
        r = client.post(
            url,
            json=payload,
            headers={"accept": "*/*"},
            timeout=timeout_s,
        )
    except httpx.HTTPError:
        return ""
    return r.text or ""


def classify_exchange(
    prompt: Prompt, raw: str, *, adapter: BackendAdapter, options: ExerciseOptions
) -> ResponseRecord:
    if not raw.strip():
        return ResponseRecord(
            prompt=prompt,
            raw_body=raw,
            content="",
            display=NO_RESPONSE_TEXT,
            verdict=TrialVerdict.NO_RESPONSE,
        )

    parsed = adapter.parse_response(options.mode, raw)
    if not parsed.content:
        if mentions_missing_chat_template(raw):
            return ResponseRecord(
                prompt=prompt,
                raw_body=raw,
                content="",
                display=NO_CHAT_TEMPLATE_TEXT,
                verdict=TrialVerdict.NO_CHAT_TEMPLATE,
            )
        return ResponseRecord(
            prompt=prompt,
            raw_body=raw,
            content="",
            display=f"{parsed.error or PARSE_ERROR_PREFIX} | {raw}",
            verdict=TrialVerdict.PARSE_ERROR,
        )

    verdict = TrialVerdict.SUCCESS
    if options.success_pattern and not matches_success_pattern(parsed.content, options.success_pattern):
        verdict = TrialVerdict.PATTERN_MISMATCH
    return ResponseRecord(
        prompt=prompt,
        raw_body=raw,
        content=parsed.content,
        display=parsed.content,
        verdict=verdict,
    )


def matches_success_pattern(content: str, pattern: str) -> bool:
    return re.search(pattern, content, re.IGNORECASE) is not None


def mentions_missing_chat_template(raw: str) -> bool:
    """Detect the server's "no chat template" rejection (base models).

    Both `{"error": {"message": ...}}` and `{"object": "error", "message": ...}`
    error shapes are recognized.
    """
    message = _error_message(raw)
    return CHAT_TEMPLATE_SIGNAL in message.lower()


def _error_message(raw: str) -> str:
    try:
        data = json.loads(raw)
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "")
    if isinstance(error, str):
        return error
    if data.get("object") == "error" or "detail" in data:
        return str(data.get("message") or data.get("detail") or "")
    return ""


def _append_exchange(path: Path, idx: int, url: str, prompt: Prompt, raw: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(f"--- Prompt {idx} ({url}) ---\n")
        f.write(f"prompt: {prompt.content}\n")
        f.write(raw)
        f.write("\n\n")
