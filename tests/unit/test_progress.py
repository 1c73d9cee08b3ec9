"""Tests for ingest.lib.progress module."""

import json

from ingest.lib.progress import BatchProgress, FinalSummary, append_run_log, format_duration


def test_format_duration():
    assert format_duration(125) == "2m 5s"
    assert format_duration(0) == "0m 0s"
    assert format_duration(-3) == "0m 0s"


class TestBatchProgress:
    def test_eta_before_first_task(self, clock):
        progress = BatchProgress(total_tasks=10, clock=clock)
        assert progress.eta_seconds() is None
        assert progress.eta_text == "Calculating..."

    def test_eta_is_average_times_remaining(self, clock):
        progress = BatchProgress(total_tasks=10, clock=clock)
        clock.advance(20)
        progress.record_success()
        progress.record_success()

        assert progress.eta_seconds() == 80
        assert progress.eta_text == "1m 20s"

    def test_counters_and_bar(self, clock):
        progress = BatchProgress(total_tasks=4, clock=clock)
        progress.record_success(api_calls=2)
        progress.record_failure("AAPL", "prices", "boom", api_calls=3)

        assert progress.completed_tasks == 2
        assert progress.successful_tasks == 1
        assert progress.failed_tasks == 1
        assert progress.api_calls_used == 5
        assert progress.percentage == 50
        assert progress.bar() == "█" * 15 + "░" * 15

    def test_only_recent_errors_are_kept(self, clock):
        progress = BatchProgress(total_tasks=10, clock=clock)
        for i in range(8):
            progress.record_failure(f"E{i}", "prices", f"error {i}")

        assert [e.entity for e in progress.recent_errors] == ["E3", "E4", "E5", "E6", "E7"]
        assert sum(progress.error_groups.values()) == 8

    def test_errors_grouped_by_prefix(self, clock):
        progress = BatchProgress(total_tasks=3, clock=clock)
        long_message = "x" * 50
        progress.record_failure("A", "prices", long_message + " for A")
        progress.record_failure("B", "prices", long_message + " for B")
        progress.record_failure("C", "prices", "other")

        assert progress.error_groups[long_message] == 2
        assert progress.error_groups["other"] == 1

    def test_render_lists_recent_errors(self, clock):
        progress = BatchProgress(total_tasks=2, clock=clock)
        progress.record_failure("AAPL", "prices", "Server error")
        text = progress.render()

        assert "Tasks: 1/2" in text
        assert "AAPL [prices]: Server error" in text


def _summary(**overrides):
    values = dict(
        mode="incremental",
        elapsed_seconds=120,
        total_requests=40,
        successful=17,
        failed=3,
        total_tasks=20,
        categories_touched=["stock_prices"],
        entities_processed=10,
    )
    values.update(overrides)
    return FinalSummary(**values)


class TestFinalSummary:
    def test_derived_values(self):
        summary = _summary()
        assert summary.duration_minutes == 2.0
        assert summary.success_rate == 85.0
        assert summary.calls_per_minute == 20.0

    def test_report_groups_errors(self):
        summary = _summary(error_groups={"Server error": 3})
        report = summary.render_report()

        assert "BATCH LOADING COMPLETED" in report
        assert "Success Rate: 85.0%" in report
        assert "Server error: 3 occurrences" in report

    def test_stopped_report(self):
        assert "BATCH LOADING STOPPED" in _summary(stopped_early=True).render_report()

    def test_run_log_entry(self):
        entry = _summary().to_run_log_entry()
        assert entry["successful_updates"] == 17
        assert entry["failed_updates"] == 3
        assert entry["categories_updated"] == ["stock_prices"]
        assert entry["symbols_processed"] == 10


class TestAppendRunLog:
    def test_keeps_last_runs(self, tmp_path):
        path = tmp_path / "logs" / "update_log.json"
        for i in range(5):
            append_run_log(path, _summary(total_requests=i), keep=3)

        entries = json.loads(path.read_text())
        assert [e["total_requests"] for e in entries] == [2, 3, 4]

    def test_corrupt_log_is_replaced(self, tmp_path):
        path = tmp_path / "update_log.json"
        path.write_text("{not json")

        entries = append_run_log(path, _summary())
        assert len(entries) == 1
