from __future__ import annotations

import json
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence, runtime_checkable


PARSE_ERROR_PREFIX = "PARSE_ERROR"


@dataclass(frozen=True)
class ParsedResponse:
    content: str
    raw: str
    error: str | None = None


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    read_only: bool = False

    def as_flag(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


def parse_error(raw: str, exc: BaseException | str) -> ParsedResponse:
    return ParsedResponse(content="", raw=raw, error=f"{PARSE_ERROR_PREFIX}: {exc}")


@runtime_checkable
class BackendAdapter(Protocol):
    """Per-framework contract used by the trial engine.

    Only the methods below are required. `completion_path` is required when
    the completion endpoint mode is selected. Adapters may also provide
    `docker_entrypoint()`, `extra_mounts()`, `validate_config(settings)` and
    `build_launch_script(model, port, launch_args, directory)`.
    """

    name: str

    def build_launch_command(
        self, model: str, port: int, launch_args: Sequence[tuple[str, Any]]
    ) -> list[str]:
        ...

    def health_path(self) -> str:
        ...

    def chat_path(self) -> str:
        ...

    def build_payload(
        self,
        *,
        mode: str,
        model: str,
        prompt: str,
        params: dict[str, Any],
        extra_params: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> dict[str, Any]:
        ...

    def parse_response(self, mode: str, raw: str) -> ParsedResponse:
        ...


def render_flags(launch_args: Sequence[tuple[str, Any]]) -> list[str]:
    """Turn ordered (key, value) pairs into CLI flags.

    `True` renders a bare flag, `False`/`None` are skipped, mappings and lists
    are JSON-encoded so nested server options survive as one argument.
    """
    flags: list[str] = []
    for key, value in launch_args:
        flag = key if key.startswith("-") else f"--{key}"
        if isinstance(value, bool):
            if value:
                flags.append(flag)
        elif value is None:
            continue
        elif isinstance(value, (dict, list)):
            flags.extend([flag, json.dumps(value)])
        else:
            flags.extend([flag, str(value)])
    return flags


def write_launch_script(directory: Path, argv: Sequence[str], *, prefix: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    script_path = directory / f"{prefix}_launch.sh"
    script_path.write_text(
        "#!/bin/bash\nexec " + shlex.join(argv) + "\n",
        encoding="utf-8",
    )
    script_path.chmod(0o755)
    return script_path
