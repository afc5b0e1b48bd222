from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from serve_probe.core.prompts import Prompt
from serve_probe.core.verdicts import TrialVerdict


NO_RESPONSE_TEXT = "NO_RESPONSE (timeout or connection error)"
NO_CHAT_TEMPLATE_TEXT = "Model does not define a chat template (base model)"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def escape_content(text: str) -> str:
    # Keep each record on a single line.
    return text.replace("\r", "").replace("\n", "\\n")


@dataclass(frozen=True)
class ResponseRecord:
    prompt: Prompt
    raw_body: str
    content: str  # extracted content, may be empty
    display: str  # what gets reported: content, or an error marker
    verdict: TrialVerdict
    timestamp: str = field(default_factory=utc_now)  # when the exchange finished

    @property
    def escaped(self) -> str:
        return escape_content(self.display)


@dataclass
class OutputRecord:
    # Field order is the output column order.
    timestamp: str
    docker_image: str
    env_vars: str
    serving_args: str
    model: str
    endpoint: str
    serve_launch_status: int
    prompt: str
    response: str
    status: str

    framework: str
    trial_id: str
    trial_verdict: str


def output_record_to_json(rec: OutputRecord) -> dict[str, Any]:
    return rec.__dict__


@dataclass
class TrialResult:
    trial_id: str
    framework: str
    model: str
    endpoint: str
    verdict: TrialVerdict
    health: str
    launched: bool
    serving_args: str
    records: list[ResponseRecord] = field(default_factory=list)
    log_path: Path | None = None
    error_pattern: str | None = None
    watchdog_fired: bool = False
    elapsed_s: float | None = None
