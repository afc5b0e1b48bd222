from __future__ import annotations

from enum import Enum
from typing import Iterable


class TrialVerdict(str, Enum):
    SUCCESS = "SUCCESS"
    SERVER_START_TIMEOUT = "SERVER_START_TIMEOUT"
    NO_CHAT_TEMPLATE = "NO_CHAT_TEMPLATE"
    PARSE_ERROR = "PARSE_ERROR"
    NO_RESPONSE = "NO_RESPONSE"
    PATTERN_MISMATCH = "PATTERN_MISMATCH"
    LOG_ERROR_PATTERN = "LOG_ERROR_PATTERN"

    def __str__(self) -> str:
        return self.value


# Lower rank wins. NO_RESPONSE and PARSE_ERROR share a rank: the first one seen wins.
_RANK = {
    TrialVerdict.SERVER_START_TIMEOUT: 0,
    TrialVerdict.NO_CHAT_TEMPLATE: 1,
    TrialVerdict.NO_RESPONSE: 2,
    TrialVerdict.PARSE_ERROR: 2,
    TrialVerdict.LOG_ERROR_PATTERN: 3,
    TrialVerdict.PATTERN_MISMATCH: 4,
    TrialVerdict.SUCCESS: 5,
}


def precedence(verdict: TrialVerdict) -> int:
    return _RANK[verdict]


def worst_verdict(verdicts: Iterable[TrialVerdict]) -> TrialVerdict:
    """Pick the highest-precedence verdict; ties keep the earliest one."""
    best = TrialVerdict.SUCCESS
    for v in verdicts:
        if _RANK[v] < _RANK[best]:
            best = v
    return best
