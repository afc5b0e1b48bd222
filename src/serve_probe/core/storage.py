from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from serve_probe.core.records import OutputRecord, output_record_to_json


def append_jsonl(path: Path, records: Iterable[OutputRecord]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with path.open("a", encoding="utf-8") as f:
        for rec in records:
            # json.dumps escapes control characters, so every record is one line.
            f.write(json.dumps(output_record_to_json(rec), ensure_ascii=False))
            f.write("\n")
            n += 1
    return n


def read_jsonl(path: Path):
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
