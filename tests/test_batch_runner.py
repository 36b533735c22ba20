"""
Tests for scheduling, end-to-end batch runs and the command line.
"""

import csv
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

import main
from campaigns.batch_runner import BatchRunner, parse_start_time, seconds_until
from campaigns.records_io import ReportWriter
from core.config import AppConfig


def write_csv(path, rows):
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["name", "ktp", "phone"])
        writer.writeheader()
        writer.writerows(rows)
    return str(path)


def fast_config(tmp_path, **overrides) -> AppConfig:
    values = dict(
        TARGET_URL="https://form.test/",
        OUTPUT_DIR=str(tmp_path),
        PREFLIGHT_ENABLED=False,
        MAX_ATTEMPTS=2,
        INITIAL_CONCURRENCY=2,
        PEAK_CONCURRENCY=4,
        PEAK_HOUR=None,
        MIN_ADMISSION_INTERVAL=0.0,
        BACKOFF_BASE_SECONDS=0.01,
        BACKOFF_MAX_SECONDS=0.05,
        BACKOFF_JITTER_SECONDS=0.0,
        FALLBACK_CHECK_URL=None,
        FALLBACK_GRACE_SECONDS=0.01,
        OBSERVE_TIMEOUT_SECONDS=0.1,
        OBSERVE_POLL_SECONDS=0.01,
        ATTEMPT_TIMEOUT_SECONDS=2.0,
        FLUSH_THRESHOLD=2,
    )
    values.update(overrides)
    return AppConfig(**values)


class TestSchedule:

    @pytest.mark.parametrize("value,expected", [
        ("15:00", (15, 0, 0)),
        ("07:30:45", (7, 30, 45)),
    ])
    def test_parse_start_time(self, value, expected):
        assert parse_start_time(value) == expected

    @pytest.mark.parametrize("value", ["15", "25:00", "12:60", "a:b"])
    def test_parse_start_time_invalid(self, value):
        with pytest.raises(ValueError):
            parse_start_time(value)

    def test_later_today(self):
        now = datetime(2026, 3, 1, 14, 59, 0)
        assert seconds_until(15, 0, 0, now=now) == pytest.approx(60.1)

    def test_already_passed_rolls_to_tomorrow(self):
        now = datetime(2026, 3, 1, 15, 0, 5)
        assert seconds_until(15, 0, 0, now=now) == pytest.approx(24 * 3600 - 4.9)


class TestBatchRunner:

    @pytest.mark.asyncio
    async def test_end_to_end(self, tmp_path, raw_rows, make_client, pages):
        input_path = write_csv(tmp_path / "input.csv", raw_rows)
        client = make_client({"3174019876543210": [pages.rejected]})
        sink = ReportWriter(str(tmp_path), run_id="e2e")
        runner = BatchRunner(fast_config(tmp_path), client=client, sink=sink)

        summary = await runner.run(input_path)

        assert summary["input_rows"] == 4
        assert summary["unique_records"] == 2
        assert summary["rejected"] == 1
        assert summary["duplicates"] == 1
        assert summary["processed"] == 2
        assert summary["interrupted"] is False
        assert summary["results"] == {"total": 3, "succeeded": 1, "exhausted": 2}
        assert summary["metrics"]["total_attempts"] == 3

        with open(sink.report_path, newline="", encoding="utf-8") as f:
            rows = {r["identifier"]: r for r in csv.DictReader(f)}
        assert rows["3174012345678901"]["final_status"] == "succeeded"
        assert rows["3174012345678901"]["confirmation_id"] == "A-012"
        assert rows["3174019876543210"]["attempts_made"] == "2"
        assert rows["3174011111111111"]["attempts_made"] == "0"
        assert "name" in rows["3174011111111111"]["last_detail"]

    @pytest.mark.asyncio
    async def test_invalid_row_does_not_shadow_valid_duplicate(self, tmp_path, make_client):
        input_path = write_csv(tmp_path / "input.csv", [
            {"name": "Siti", "ktp": "654321", "phone": "0813"},
            {"name": "", "ktp": "123456", "phone": "0811"},
            {"name": "Budi", "ktp": "123456", "phone": "0812"},
            {"name": "", "ktp": "777", "phone": "0814"},
            {"name": "", "ktp": "777", "phone": "0815"},
        ])
        client = make_client()
        sink = ReportWriter(str(tmp_path), run_id="shadow")
        runner = BatchRunner(fast_config(tmp_path), client=client, sink=sink)

        summary = await runner.run(input_path)

        with open(sink.report_path, newline="", encoding="utf-8") as f:
            rows = [(r["identifier"], r["final_status"], r["attempts_made"]) for r in csv.DictReader(f)]
        assert sorted(rows) == [
            ("123456", "succeeded", "1"),
            ("654321", "succeeded", "1"),
            ("777", "exhausted", "0"),
        ]
        assert summary["results"] == {"total": 3, "succeeded": 2, "exhausted": 1}
        assert sorted(client.calls) == ["123456", "654321"]

    @pytest.mark.asyncio
    async def test_stop_before_run_interrupts(self, tmp_path, raw_rows, make_client):
        input_path = write_csv(tmp_path / "input.csv", raw_rows)
        client = make_client()
        runner = BatchRunner(fast_config(tmp_path), client=client, sink=ReportWriter(str(tmp_path)))
        runner.request_stop()

        summary = await runner.run(input_path)

        assert summary["interrupted"] is True
        assert summary["results"]["interrupted"] == 2
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_preflight_waits_for_target(self, tmp_path, raw_rows, make_client):
        input_path = write_csv(tmp_path / "input.csv", raw_rows)
        client = make_client()
        calls = []

        async def reachable(target, retry_seconds=5.0, stop_event=None):
            calls.append(target)
            return True

        client.wait_until_reachable = reachable
        config = fast_config(tmp_path, PREFLIGHT_ENABLED=True)
        runner = BatchRunner(config, client=client, sink=ReportWriter(str(tmp_path)))

        await runner.run(input_path)

        assert calls == ["https://form.test/"]

    @pytest.mark.asyncio
    async def test_client_started_once_before_workers(self, tmp_path, raw_rows, make_client):
        input_path = write_csv(tmp_path / "input.csv", raw_rows)
        client = make_client()
        client.start = AsyncMock()
        runner = BatchRunner(fast_config(tmp_path), client=client, sink=ReportWriter(str(tmp_path)))

        await runner.run(input_path)

        client.start.assert_awaited_once()

    def test_build_uses_peak_window_limit(self, tmp_path, make_client):
        config = fast_config(tmp_path, PEAK_HOUR=15, PEAK_HOUR_CONCURRENCY=1)
        runner = BatchRunner(config, client=make_client(), sink=ReportWriter(str(tmp_path)))

        orchestrator = runner.build(now=datetime(2026, 3, 1, 15, 0, 30))

        assert orchestrator.controller.limit == 1
        assert orchestrator.controller.max_limit == 4


class TestCommandLine:

    def test_validate_reports_ok(self, tmp_path, raw_rows):
        input_path = write_csv(tmp_path / "input.csv", raw_rows)
        with patch("main.setup_logging"):
            code = main.main(["validate", "--input", input_path, "--url", "https://form.test/"])
        assert code == 0

    def test_schema_error_exit_code(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("name,ktp\nBudi,123\n", encoding="utf-8")
        with patch("main.setup_logging"):
            code = main.main(["validate", "--input", str(path)])
        assert code == 1

    def test_bad_config_exit_code(self, tmp_path):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("not_a_setting: 1\n", encoding="utf-8")
        code = main.main(["validate", "--input", "x.csv", "--config", str(config_path)])
        assert code == 1

    def test_cli_overrides(self, tmp_path):
        with patch("main.setup_logging"), patch("main.validate_batch", return_value=0) as validate:
            main.main([
                "validate", "--input", "in.csv",
                "--max-attempts", "5", "--concurrency", "2", "--client", "browser",
            ])
        config = validate.call_args[0][0]
        assert config.MAX_ATTEMPTS == 5
        assert config.INITIAL_CONCURRENCY == 2
        assert config.CLIENT_KIND == "browser"
