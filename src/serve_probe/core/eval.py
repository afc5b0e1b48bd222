from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence

from serve_probe.core.health import HealthOutcome
from serve_probe.core.records import ResponseRecord
from serve_probe.core.verdicts import TrialVerdict, worst_verdict


def scan_log_for_errors(path: Path, patterns: Sequence[str]) -> str | None:
    """Return the first configured error substring found in the container log."""
    if not patterns or not path.exists():
        return None
    text = path.read_text(encoding="utf-8", errors="replace")
    for pattern in patterns:
        if pattern and pattern in text:
            return pattern
    return None


def classify_trial(
    *,
    health: HealthOutcome,
    records: Iterable[ResponseRecord],
    log_error: str | None = None,
) -> TrialVerdict:
    """Trial verdict, highest precedence first:

    SERVER_START_TIMEOUT > NO_CHAT_TEMPLATE > NO_RESPONSE | PARSE_ERROR
    > LOG_ERROR_PATTERN > PATTERN_MISMATCH > SUCCESS
    """
    if health is not HealthOutcome.READY:
        return TrialVerdict.SERVER_START_TIMEOUT

    candidates = [r.verdict for r in records]
    if log_error is not None:
        candidates.append(TrialVerdict.LOG_ERROR_PATTERN)
    return worst_verdict(candidates)
