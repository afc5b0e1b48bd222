from __future__ import annotations


class ConfigError(ValueError):
    """Invalid or incomplete run configuration. Raised before any trial starts."""
