from __future__ import annotations

import re
from dataclasses import dataclass

from serve_probe.core.errors import ConfigError


@dataclass(frozen=True)
class TargetSpec:
    framework: str
    model: str

    @property
    def target_spec(self) -> str:
        return f"{self.framework}:{self.model}"

    @property
    def safe_model(self) -> str:
        return safe_name(self.model)


def parse_target_spec(text: str, *, default_framework: str, known_frameworks: set[str]) -> TargetSpec:
    """Parse `framework:model` or a bare model id served by the default framework.

    The prefix only counts as a framework when it names a known backend, so
    model ids that contain a colon (e.g. `org/model:tag`) stay intact.
    """
    text = text.strip()
    framework = default_framework.strip().lower()
    model = text
    if ":" in text:
        prefix, rest = text.split(":", 1)
        if prefix.strip().lower() in known_frameworks:
            framework = prefix.strip().lower()
            model = rest.strip()
    if framework not in known_frameworks:
        raise ConfigError(f"Unknown framework: {framework}")
    if not model:
        raise ConfigError("Model name is required")
    return TargetSpec(framework=framework, model=model)


def safe_name(text: str) -> str:
    # Docker object names allow [a-zA-Z0-9_.-].
    return re.sub(r"[^a-zA-Z0-9_.-]", "_", text)
