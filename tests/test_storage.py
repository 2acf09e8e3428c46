"""Tests for day-partitioned storage, aggregation and retention."""

import json
from datetime import date, datetime, timedelta

import pytest

from conftest import make_image, make_record
from screenlog.storage import (
    ActivityStorage, AggregatedRecord, RetentionPolicy, StorageError, SummaryRecord,
    aggregate_records, format_timestamp, parse_timestamp,
)

DAY_START = datetime(2026, 10, 17, 9, 0, 0)


def fill(storage, count, start=DAY_START, **kwargs):
    created = []
    for i in range(count):
        created.extend(storage.save_summary(make_record(start + timedelta(seconds=i), f"step {i}", **kwargs)))
    return created


class TestRecords:

    def test_save_and_read_back(self, storage):
        record = make_record(DAY_START, "Editing storage.py", app="VS Code", keywords=[".py"],
                             provider="ollama/llava", confidence=0.8)
        storage.save_summary(record)
        assert storage.get_summaries("2026-10-17") == [record]
        assert storage.get_summaries(date(2026, 10, 17)) == [record]
        assert storage.list_dates() == ["2026-10-17"]

    def test_missing_day_is_empty(self, storage):
        assert storage.get_summaries("2020-01-01") == []

    def test_partition_file_layout(self, storage):
        storage.save_summary(make_record(DAY_START))
        data = json.loads(storage.partition_path("2026-10-17").read_text())
        assert data["date"] == "2026-10-17"
        assert data["evicted"] == 0
        assert data["entries"][0]["kind"] == "summary"
        assert data["entries"][0]["timestamp"] == "2026-10-17T09:00:00"

    def test_corrupt_partition_raises(self, storage):
        storage.partition_path("2026-10-17").write_text("{not json")
        with pytest.raises(StorageError):
            storage.get_summaries("2026-10-17")

    def test_no_temp_files_left_behind(self, storage):
        fill(storage, 3)
        assert [p.name for p in storage.summaries_dir.iterdir()] == ["2026-10-17.json"]

    def test_partition_entry_that_is_not_an_object_raises(self, storage):
        storage.partition_path("2026-10-17").write_text('{"date": "2026-10-17", "entries": ["x"]}')
        with pytest.raises(StorageError):
            storage.get_summaries("2026-10-17")

    def test_interrupted_write_keeps_previous_partition(self, storage, monkeypatch):
        fill(storage, 2)
        path = storage.partition_path("2026-10-17")
        before = path.read_text()

        def dump_then_fail(obj, f, **kwargs):
            f.write('{"date": "2026-10-17", "entr')
            raise OSError("No space left on device")

        monkeypatch.setattr(json, "dump", dump_then_fail)
        with pytest.raises(StorageError):
            storage.save_summary(make_record(DAY_START + timedelta(minutes=1), "lost"))
        monkeypatch.undo()

        assert path.read_text() == before
        assert [r.summary for r in storage.get_summaries("2026-10-17")] == ["step 0", "step 1"]
        assert [p.name for p in storage.summaries_dir.iterdir()] == ["2026-10-17.json"]

    def test_failed_replace_leaves_no_temp_file(self, storage, monkeypatch):
        fill(storage, 1)
        before = storage.partition_path("2026-10-17").read_text()

        def refuse(src, dst):
            raise PermissionError("file is locked")

        monkeypatch.setattr("screenlog.storage.os.replace", refuse)
        with pytest.raises(StorageError):
            storage.save_summary(make_record(DAY_START + timedelta(minutes=1), "lost"))
        monkeypatch.undo()

        assert storage.partition_path("2026-10-17").read_text() == before
        assert [p.name for p in storage.summaries_dir.iterdir()] == ["2026-10-17.json"]

    def test_records_are_split_by_day(self, storage):
        storage.save_summary(make_record(datetime(2026, 10, 16, 23, 59, 59)))
        storage.save_summary(make_record(datetime(2026, 10, 17, 0, 0, 1)))
        assert storage.list_dates() == ["2026-10-16", "2026-10-17"]

    def test_latest_and_recent(self, storage, clock):
        clock.now = DAY_START + timedelta(minutes=10)
        storage.save_summary(make_record(DAY_START, "old"))
        for i in range(5):
            storage.save_summary(make_record(clock.now - timedelta(seconds=50 - i), f"recent {i}"))

        assert storage.get_latest_summary().summary == "recent 4"
        recent = storage.get_recent_summaries(limit=3, minutes=3)
        assert [r.summary for r in recent] == ["recent 2", "recent 3", "recent 4"]
        assert storage.count_records() == 6

    def test_timestamp_helpers(self):
        moment = datetime(2026, 10, 17, 9, 30, 15)
        assert parse_timestamp(format_timestamp(moment)) == moment

    def test_has_issue(self):
        assert make_record(DAY_START, action="issue").has_issue
        assert make_record(DAY_START, error_tag="build error").has_issue
        assert not make_record(DAY_START).has_issue


class TestAggregation:

    def test_no_aggregate_through_300th_record(self, storage):
        assert fill(storage, 300) == []
        assert storage.get_aggregated("2026-10-17") == []

    def test_exactly_one_aggregate_after_301st_record(self, storage):
        fill(storage, 300)
        created = storage.save_summary(make_record(DAY_START + timedelta(hours=1), "step 300"))

        assert len(created) == 1
        aggregated = storage.get_aggregated("2026-10-17")
        assert len(aggregated) == 1
        assert aggregated[0].window_index == 0
        assert aggregated[0].record_count == 300
        assert aggregated[0].start_time == "2026-10-17T09:00:00"
        assert aggregated[0].end_time == format_timestamp(DAY_START + timedelta(seconds=299))
        # raw records stay
        assert len(storage.get_summaries("2026-10-17")) == 301

    def test_second_window(self, storage):
        fill(storage, 601)
        assert [a.window_index for a in storage.get_aggregated("2026-10-17")] == [0, 1]

    def test_windows_created_once(self, storage):
        fill(storage, 350)
        assert len(storage.get_aggregated("2026-10-17")) == 1

    def test_small_window_size(self, tmp_path, clock):
        storage = ActivityStorage(tmp_path, window_size=3, clock=clock)
        fill(storage, 7)
        assert [a.record_count for a in storage.get_aggregated("2026-10-17")] == [3, 3]

    def test_aggregate_records_merges(self):
        records = [
            make_record(DAY_START, "Editing config.py", app="VS Code", keywords=[".py", "editing"]),
            make_record(DAY_START + timedelta(seconds=1), "Editing config.py", app="VS Code",
                        keywords=[".py"]),
            make_record(DAY_START + timedelta(seconds=2), "Reading docs", app="Firefox",
                        keywords=["reading"]),
            make_record(DAY_START + timedelta(seconds=3), "Build failed", app="Terminal",
                        action="issue", issue_summary="cargo build failed"),
        ]
        aggregated = aggregate_records(records, 4)

        assert aggregated.window_index == 4
        assert aggregated.apps[0] == "VS Code"
        assert len(aggregated.apps) == 3
        assert aggregated.keywords[0] == ".py"
        assert aggregated.main_activities == ["Editing config.py", "Reading docs", "Build failed"]
        assert aggregated.has_errors is True
        assert aggregated.error_summary == "cargo build failed"
        assert aggregated.summary.startswith("Used VS Code")

    def test_main_activities_capped_at_five(self):
        records = [make_record(DAY_START + timedelta(seconds=i), f"task {i}") for i in range(9)]
        assert len(aggregate_records(records, 0).main_activities) == 5

    def test_aggregated_entry_roundtrip(self):
        aggregated = AggregatedRecord("2026-10-17T09:00:00", "2026-10-17T09:05:00", 0, "Used X: y",
                                      apps=["X"], record_count=300)
        assert AggregatedRecord.from_entry(aggregated.to_entry()) == aggregated


class TestRetention:

    def test_age_boundary(self, storage):
        today = date(2026, 10, 17)
        for age in (8, 7, 6, 0):
            day = datetime.combine(today - timedelta(days=age), datetime.min.time()) + timedelta(hours=12)
            storage.save_summary(make_record(day))

        report = storage.run_maintenance(RetentionPolicy(retention_days=7), today=today)

        assert report.removed_days == ["2026-10-09"]
        assert storage.list_dates() == ["2026-10-10", "2026-10-11", "2026-10-17"]

    def test_old_screenshot_folders_removed(self, storage):
        old = datetime(2026, 10, 1, 12, 0, 0)
        ref = storage.save_screenshot(make_image("left"), old)
        assert ref.startswith("2026-10-01/")
        storage.save_screenshot(make_image("left"), DAY_START)

        storage.run_maintenance(RetentionPolicy(retention_days=7), today=date(2026, 10, 17))

        assert [p.name for p in storage.screenshots_dir.iterdir()] == ["2026-10-17"]

    def test_count_cap_evicts_oldest_first(self, storage):
        refs = []
        for i in range(5):
            moment = DAY_START + timedelta(seconds=i)
            ref = storage.save_screenshot(make_image("left"), moment)
            refs.append(ref)
            storage.save_summary(make_record(moment, f"step {i}", detail_ref=ref))

        report = storage.run_maintenance(RetentionPolicy(max_screenshots=3), today=date(2026, 10, 17))

        assert report.evicted_records == 2
        assert [r.summary for r in storage.get_summaries("2026-10-17")] == ["step 2", "step 3", "step 4"]
        assert storage.load_partition("2026-10-17").evicted == 2
        assert not (storage.screenshots_dir / refs[0]).exists()
        assert (storage.screenshots_dir / refs[4]).exists()

    def test_window_numbering_survives_eviction(self, tmp_path, clock):
        storage = ActivityStorage(tmp_path, window_size=3, clock=clock)
        fill(storage, 4)
        storage.run_maintenance(RetentionPolicy(max_screenshots=2), today=date(2026, 10, 17))
        fill(storage, 3, start=DAY_START + timedelta(minutes=5))

        # 7 records appended in total: windows 0 and 1 complete
        assert [a.window_index for a in storage.get_aggregated("2026-10-17")] == [0, 1]

    def test_maintenance_runs_at_most_once_a_minute(self, storage, clock):
        policy = RetentionPolicy(max_screenshots=1)
        storage.save_summary(make_record(DAY_START, "a"), policy)
        storage.save_summary(make_record(DAY_START + timedelta(seconds=1), "b"), policy)
        assert storage.count_records() == 2

        clock.advance(seconds=61)
        storage.save_summary(make_record(DAY_START + timedelta(seconds=2), "c"), policy)
        assert [r.summary for r in storage.get_summaries("2026-10-17")] == ["c"]


class TestLogSnapshots:

    def test_write_log_snapshot(self, storage):
        path = storage.write_log_snapshot("model/analyze!", "hello")
        assert path.parent == storage.logs_dir
        assert path.name == "20261017-090000-000-modelanalyze.log"
        assert path.read_text() == "hello"

    def test_old_logs_purged(self, storage):
        (storage.logs_dir / "20261001-120000-000-old.log").write_text("x")
        storage.write_log_snapshot("new", "y")
        report = storage.run_maintenance(RetentionPolicy(), today=date(2026, 10, 17))
        assert report.removed_logs == 1
        assert len(list(storage.logs_dir.iterdir())) == 1


def test_summary_record_ignores_unknown_fields():
    record = SummaryRecord.from_entry({"kind": "summary", "timestamp": "2026-10-17T09:00:00",
                                       "summary": "x", "legacy_field": 1})
    assert record.summary == "x"
