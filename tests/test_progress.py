"""Tests for progress reporting module."""

import io
import time

import pytest
from spreadsplit.progress import ProgressReporter, ProgressStats, format_time


class TestFormatTime:
    """Tests for time formatting."""

    def test_format_seconds(self):
        """Seconds should format as Xs."""
        assert format_time(5) == "5s"
        assert format_time(45) == "45s"

    def test_format_minutes(self):
        """Minutes should format as Xm Ys."""
        assert format_time(90) == "1m 30s"
        assert format_time(125) == "2m 5s"

    def test_format_hours(self):
        """Hours should format as Xh Ym."""
        assert format_time(3661) == "1h 1m"
        assert format_time(7200) == "2h 0m"

    def test_format_none(self):
        """None should return --:--."""
        assert format_time(None) == "--:--"


class TestProgressStats:
    """Tests for progress statistics."""

    def test_percent_complete(self):
        """Percentage should be calculated correctly."""
        stats = ProgressStats(total=10, current=5)
        assert stats.percent == 50.0

    def test_percent_zero_total(self):
        """Zero total should return 100%."""
        stats = ProgressStats(total=0)
        assert stats.percent == 100.0

    def test_rate(self):
        """Rate should be pages per second."""
        stats = ProgressStats(total=10, current=5)
        stats.start_time = time.time() - 5
        assert stats.rate == pytest.approx(1.0, rel=0.01)

    def test_eta(self):
        """ETA should estimate remaining time."""
        stats = ProgressStats(total=10, current=5)
        stats.start_time = time.time() - 5
        assert stats.eta == pytest.approx(5.0, rel=0.01)

    def test_eta_before_first_page(self):
        """ETA is unknown until a page finishes."""
        assert ProgressStats(total=10).eta is None


class TestProgressReporter:
    """Tests for progress reporter."""

    def test_counts_labeled_and_excluded(self):
        """Successes and exclusions should be tracked separately."""
        stream = io.StringIO()
        with ProgressReporter(total=3, desc="Labeling", stream=stream) as progress:
            progress.update(success=True, item_name="p1")
            progress.update(success=False, item_name="p2")
            progress.update(success=True, item_name="p3")

        assert progress.stats.current == 3
        assert progress.stats.succeeded == 2
        assert progress.stats.excluded == 1

    def test_summary_mentions_exclusions(self):
        """The final line should report excluded pages."""
        stream = io.StringIO()
        with ProgressReporter(total=2, desc="Labeling", stream=stream) as progress:
            progress.update(success=True)
            progress.update(success=False)

        summary = stream.getvalue().strip().splitlines()[-1]
        assert summary.startswith("✓ Labeling complete: 1/2 pages")
        assert "1 excluded" in summary

    def test_non_tty_writes_lines(self):
        """Without a TTY, progress is written as whole lines."""
        stream = io.StringIO()
        with ProgressReporter(total=1, desc="Features", stream=stream) as progress:
            progress.update(item_name="spread_0001")

        output = stream.getvalue()
        assert "\r" not in output
        assert "1/1" in output
        assert "spread_0001" in output

    def test_long_item_names_truncated(self):
        """Long page ids should be shortened from the left."""
        stream = io.StringIO()
        name = "book-with-a-very-long-identifier:page_0001"
        with ProgressReporter(total=1, stream=stream) as progress:
            progress.update(item_name=name)

        assert "..." + name[-22:] in stream.getvalue()
