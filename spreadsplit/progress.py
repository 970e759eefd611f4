"""
Terminal progress for long labeling and feature-extraction runs.
"""

import sys
import time
from dataclasses import dataclass, field


@dataclass
class ProgressStats:
    """Counts for a batch run."""

    total: int
    current: int = 0
    succeeded: int = 0
    excluded: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed(self) -> float:
        return time.time() - self.start_time

    @property
    def rate(self) -> float:
        """Pages per second."""
        elapsed = self.elapsed
        return self.current / elapsed if elapsed > 0 else 0.0

    @property
    def eta(self) -> float | None:
        """Seconds remaining, or None before the first page finishes."""
        if self.current == 0 or self.rate == 0:
            return None
        return (self.total - self.current) / self.rate

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return self.current / self.total * 100


def format_time(seconds: float | None) -> str:
    """Format seconds as 45s / 2m 5s / 1h 1m."""
    if seconds is None:
        return "--:--"
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int(seconds % 3600 // 60)}m"


class ProgressReporter:
    """Single-line progress on a TTY, periodic lines otherwise.

    Usage:
        with ProgressReporter(len(pages), desc="Labeling") as progress:
            for page in pages:
                ok = label(page)
                progress.update(success=ok, item_name=page.page_id)
    """

    def __init__(self, total: int, desc: str = "Progress", unit: str = "pages", stream=None):
        self.stats = ProgressStats(total=total)
        self.desc = desc
        self.unit = unit
        self._output = stream or sys.stderr
        self._is_tty = hasattr(self._output, "isatty") and self._output.isatty()
        self._last_line_len = 0

    def __enter__(self):
        self.stats.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.finish()

    def update(self, success: bool = True, item_name: str | None = None) -> None:
        """Record one finished item; failures count as excluded."""
        self.stats.current += 1
        if success:
            self.stats.succeeded += 1
        else:
            self.stats.excluded += 1
        self._render(item_name)

    def _render(self, item_name: str | None) -> None:
        stats = self.stats
        filled = int(20 * stats.percent / 100)
        bar = "█" * filled + "░" * (20 - filled)

        line = (
            f"{self.desc}: [{bar}] {stats.current}/{stats.total} "
            f"[{format_time(stats.elapsed)}<{format_time(stats.eta)}]"
        )
        if stats.excluded:
            line += f" {stats.excluded} excluded"
        if item_name:
            name = item_name if len(item_name) <= 25 else "..." + item_name[-22:]
            line += f" | {name}"

        if self._is_tty:
            clear = " " * max(0, self._last_line_len - len(line))
            self._output.write(f"\r{line}{clear}")
            self._last_line_len = len(line)
        elif stats.current in (1, stats.total) or stats.current % max(1, stats.total // 10) == 0:
            self._output.write(line + "\n")
        self._output.flush()

    def finish(self) -> None:
        """Print the summary line."""
        stats = self.stats
        if self._is_tty:
            self._output.write("\n")

        elapsed = format_time(stats.elapsed)
        if stats.excluded:
            summary = (
                f"✓ {self.desc} complete: {stats.succeeded}/{stats.total} {self.unit}, "
                f"{stats.excluded} excluded ({elapsed})"
            )
        else:
            summary = f"✓ {self.desc} complete: {stats.total} {self.unit} ({elapsed})"

        self._output.write(summary + "\n")
        self._output.flush()
