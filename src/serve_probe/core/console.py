from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.text import Text


class RunLog:
    """Timestamped running log: rich console output plus a plain-text summary file.

    Safe to call from the watchdog thread.
    """

    def __init__(self, console: Console, summary_path: Path | None = None) -> None:
        self.console = console
        self.summary_path = summary_path
        self._lock = threading.Lock()

    def attach(self, summary_path: Path) -> None:
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        self.summary_path = summary_path

    def log(self, message: str, *, style: str | None = None) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{stamp}] {message}"
        with self._lock:
            self.console.print(Text(line, style=style or ""))
            if self.summary_path is not None:
                with self.summary_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")

    def info(self, message: str) -> None:
        self.log(message)

    def warn(self, message: str) -> None:
        self.log(f"WARNING: {message}", style="yellow")

    def fail(self, message: str) -> None:
        self.log(message, style="red")

    def ok(self, message: str) -> None:
        self.log(message, style="green")

    def rule(self, title: str = "") -> None:
        self.log("=" * 60)
        if title:
            self.log(f"  {title}")
            self.log("=" * 60)
