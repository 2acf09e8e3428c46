"""Day-Partitioned Record Storage Module for screenlog.

This module persists the textual history produced by the capture loop. Every
calendar day is one self-contained JSON file, so any single read or write only
touches one day's data and retention is a matter of deleting whole files.

Two record tiers live side by side in a partition:
- SummaryRecord: one per analyzed capture (raw tier)
- AggregatedRecord: one per full window of 300 consecutive raw records,
  standing in for that window in long-range queries

Key Features:
- Atomic partition writes (write temp file, then os.replace): readers see the
  old or the new partition, never a torn one
- Aggregation windows that are contiguous, non-overlapping and created once
- Retention by age (whole partitions) and by count (oldest raw records first)
- Screenshot files and diagnostic log snapshots alongside the summaries

Partition Layout (summaries/YYYY-MM-DD.json):
    {
        "date": "2026-10-17",
        "evicted": 0,
        "entries": [
            {"kind": "summary", "timestamp": "2026-10-17T09:00:01", "summary": ..., ...},
            {"kind": "aggregated", "timestamp": "2026-10-17T09:00:01", "start_time": ..., ...}
        ]
    }

    ``evicted`` counts raw records removed from the head of the day by the
    count cap, so that window numbering stays stable after eviction.

Example:
    >>> storage = ActivityStorage("/tmp/screenlog-data")
    >>> storage.save_summary(SummaryRecord(timestamp="2026-10-17T09:00:01", summary="Editing storage.py"))
    []
    >>> [r.summary for r in storage.get_summaries("2026-10-17")]
    ['Editing storage.py']
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict, fields
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, ClassVar, Iterator, List, Optional, Union

from .capture import save_jpeg

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"
AGGREGATION_WINDOW = 300
MAINTENANCE_INTERVAL_SECONDS = 60
DEFAULT_DATA_DIR = "~/screenlog-data"


class StorageError(Exception):
    """Raised when a partition cannot be read, parsed or written."""


def format_timestamp(moment: datetime) -> str:
    """Render a local datetime the way records store it."""
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp, dropping any timezone suffix."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _to_date_str(day: Union[str, date]) -> str:
    if isinstance(day, datetime):
        return day.strftime(DATE_FORMAT)
    if isinstance(day, date):
        return day.strftime(DATE_FORMAT)
    return str(day)[:10]


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass(frozen=True)
class SummaryRecord:
    """One analyzed capture.

    Attributes:
        timestamp: Local capture time, YYYY-MM-DDTHH:MM:SS
        summary: Short description of what the user is doing
        provider: Backend identity, e.g. "api:openai/gpt-4o-mini"
        app: Main application visible, "Unknown" when not recognizable
        action: "active", or "issue" when the frame shows a problem
        keywords: Keywords extracted from the summary
        confidence: Model confidence 0.0-1.0
        detail: Longer description of the visible content
        detail_ref: Screenshot file relative to the screenshots directory
        error_tag: Structured issue type reported by the model, if any
        issue_summary: What the problem is, when action is "issue"
        suggestion: Remediation hint for the problem
    """
    KIND: ClassVar[str] = "summary"

    timestamp: str
    summary: str
    provider: str = ""
    app: str = "Unknown"
    action: str = "active"
    keywords: List[str] = field(default_factory=list)
    confidence: float = 0.0
    detail: str = ""
    detail_ref: str = ""
    error_tag: Optional[str] = None
    issue_summary: str = ""
    suggestion: str = ""

    @property
    def date(self) -> str:
        return self.timestamp[:10]

    @property
    def time(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @property
    def has_issue(self) -> bool:
        return self.action in ("issue", "error") or bool(self.error_tag)

    def to_entry(self) -> dict:
        return {"kind": self.KIND, **asdict(self)}

    @classmethod
    def from_entry(cls, data: dict) -> "SummaryRecord":
        values = _known_fields(cls, data)
        values["keywords"] = list(values.get("keywords") or [])
        return cls(**values)


@dataclass(frozen=True)
class AggregatedRecord:
    """Merged summary of one aggregation window.

    Attributes:
        start_time: Timestamp of the first record in the window
        end_time: Timestamp of the last record in the window
        window_index: Zero-based window number within the day
        summary: One-line description of the window
        apps: Most used applications (top 3)
        main_activities: Up to 5 distinct record summaries
        keywords: Most frequent keywords (top 10)
        record_count: Raw records merged
        has_errors: Whether any merged record reported an issue
        error_summary: The issues joined together, when has_errors
    """
    KIND: ClassVar[str] = "aggregated"

    start_time: str
    end_time: str
    window_index: int
    summary: str
    apps: List[str] = field(default_factory=list)
    main_activities: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    record_count: int = 0
    has_errors: bool = False
    error_summary: Optional[str] = None

    @property
    def timestamp(self) -> str:
        return self.start_time

    @property
    def date(self) -> str:
        return self.start_time[:10]

    def to_entry(self) -> dict:
        return {"kind": self.KIND, "timestamp": self.start_time, **asdict(self)}

    @classmethod
    def from_entry(cls, data: dict) -> "AggregatedRecord":
        values = _known_fields(cls, data)
        for key in ("apps", "main_activities", "keywords"):
            values[key] = list(values.get(key) or [])
        return cls(**values)


Entry = Union[SummaryRecord, AggregatedRecord]


@dataclass
class DayPartition:
    """In-memory view of one day's file; entries keep their append order."""
    date: str
    evicted: int = 0
    entries: List[Entry] = field(default_factory=list)

    @property
    def records(self) -> List[SummaryRecord]:
        return [e for e in self.entries if isinstance(e, SummaryRecord)]

    @property
    def aggregated(self) -> List[AggregatedRecord]:
        return [e for e in self.entries if isinstance(e, AggregatedRecord)]

    @property
    def raw_total(self) -> int:
        """Raw records ever appended to this day, evicted ones included."""
        return self.evicted + len(self.records)

    def window_of(self, position: int, window_size: int = AGGREGATION_WINDOW) -> int:
        """Window number of the raw record at ``position`` in ``records``."""
        return (self.evicted + position) // window_size

    def aggregated_windows(self) -> set:
        return {a.window_index for a in self.aggregated}

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "evicted": self.evicted,
            "entries": [e.to_entry() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict, day: str) -> "DayPartition":
        if not isinstance(data, dict):
            raise ValueError("partition is not a JSON object")
        entries: List[Entry] = []
        for raw in data.get("entries", []):
            kind = raw.get("kind")
            if kind == SummaryRecord.KIND:
                entries.append(SummaryRecord.from_entry(raw))
            elif kind == AggregatedRecord.KIND:
                entries.append(AggregatedRecord.from_entry(raw))
            else:
                logger.debug(f"Ignoring entry with unknown kind {kind!r} in {day}")
        return cls(date=data.get("date", day), evicted=int(data.get("evicted", 0)), entries=entries)


@dataclass(frozen=True)
class RetentionPolicy:
    """Age and count limits applied by maintenance."""
    retention_days: int = 7
    max_screenshots: int = 10000


@dataclass
class MaintenanceReport:
    removed_days: List[str] = field(default_factory=list)
    evicted_records: int = 0
    removed_screenshot_dirs: int = 0
    removed_logs: int = 0


def aggregate_records(records: List[SummaryRecord], window_index: int) -> AggregatedRecord:
    """Merge a window of raw records into one AggregatedRecord.

    Args:
        records: Records of the window in chronological order (non-empty).
        window_index: Window number within the day.

    Returns:
        AggregatedRecord covering ``records``.
    """
    app_counts = Counter(r.app for r in records if r.app)
    keyword_counts = Counter(kw for r in records for kw in r.keywords)

    activities: List[str] = []
    error_messages: List[str] = []
    for record in records:
        if record.summary and record.summary not in activities and len(activities) < 5:
            activities.append(record.summary)
        if record.has_issue:
            message = record.issue_summary or record.summary
            if message and message not in error_messages:
                error_messages.append(message)

    top_apps = [app for app, _ in app_counts.most_common(3)]
    top_keywords = [kw for kw, _ in keyword_counts.most_common(10)]
    first_activity = activities[0] if activities else "unknown activity"
    summary = f"Used {', '.join(top_apps) or 'Unknown'}: {first_activity}"

    return AggregatedRecord(
        start_time=records[0].timestamp,
        end_time=records[-1].timestamp,
        window_index=window_index,
        summary=summary,
        apps=top_apps,
        main_activities=activities,
        keywords=top_keywords,
        record_count=len(records),
        has_errors=bool(error_messages),
        error_summary="; ".join(error_messages) if error_messages else None,
    )


class ActivityStorage:
    """File-backed store for summary records, one JSON partition per day.

    Writes are serialized by a lock and each partition is replaced atomically;
    reads take no lock. Read and parse problems raise StorageError so that
    explicit callers see them; the capture loop catches and logs them.

    Attributes:
        data_dir (Path): Root directory of all persisted data
        window_size (int): Raw records per aggregation window

    Example:
        >>> storage = ActivityStorage()
        >>> created = storage.save_summary(record, RetentionPolicy(retention_days=7))
        >>> storage.get_latest_summary().summary
    """

    def __init__(self, data_dir: Union[str, Path, None] = None,
                 window_size: int = AGGREGATION_WINDOW,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize ActivityStorage.

        Args:
            data_dir: Root data directory (default: ~/screenlog-data)
            window_size: Raw records per aggregation window (default: 300)
            clock: Returns the current local time; replaceable in tests

        Raises:
            StorageError: If the directory structure cannot be created
        """
        self.data_dir = Path(data_dir or DEFAULT_DATA_DIR).expanduser()
        self.window_size = window_size
        self._clock = clock
        self._write_lock = threading.RLock()
        self._last_maintenance: Optional[datetime] = None
        self.ensure_dirs()

    # ============ Layout ============

    @property
    def summaries_dir(self) -> Path:
        return self.data_dir / "summaries"

    @property
    def screenshots_dir(self) -> Path:
        return self.data_dir / "screenshots"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    def ensure_dirs(self) -> None:
        for directory in (self.data_dir, self.summaries_dir, self.screenshots_dir, self.logs_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to create directory {directory}: {e}") from e

    def partition_path(self, day: Union[str, date]) -> Path:
        return self.summaries_dir / f"{_to_date_str(day)}.json"

    def screenshot_path(self, moment: datetime) -> Path:
        """Path for a screenshot taken at ``moment`` (directory created on save)."""
        return (self.screenshots_dir / moment.strftime(DATE_FORMAT)
                / f"{moment.strftime('%H%M%S')}-{moment.microsecond // 1000:03d}.jpg")

    def screenshot_ref(self, path: Path) -> str:
        """Reference stored in SummaryRecord.detail_ref for a screenshot path."""
        return path.relative_to(self.screenshots_dir).as_posix()

    def save_screenshot(self, image, moment: datetime, quality: int = 80) -> str:
        """Write ``image`` as a JPEG for ``moment`` and return its detail_ref.

        Raises:
            CaptureError: If the file cannot be written.
        """
        path = save_jpeg(image, self.screenshot_path(moment), quality)
        return self.screenshot_ref(path)

    # ============ Partition I/O ============

    def list_dates(self) -> List[str]:
        """Dates that have a partition, oldest first."""
        dates = []
        for path in self.summaries_dir.glob("*.json"):
            try:
                datetime.strptime(path.stem, DATE_FORMAT)
            except ValueError:
                continue
            dates.append(path.stem)
        return sorted(dates)

    def load_partition(self, day: Union[str, date]) -> DayPartition:
        """Load one day's partition; a missing file is an empty partition.

        Raises:
            StorageError: If the file exists but cannot be read or parsed.
        """
        day_str = _to_date_str(day)
        path = self.partition_path(day_str)
        if not path.exists():
            return DayPartition(date=day_str)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return DayPartition.from_dict(data, day_str)
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            raise StorageError(f"Failed to read partition {path.name}: {e}") from e

    @contextmanager
    def _atomic_write(self, path: Path) -> Iterator:
        """Yield a text file that replaces ``path`` only once fully written."""
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yield f
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _write_partition(self, partition: DayPartition) -> None:
        path = self.partition_path(partition.date)
        try:
            with self._atomic_write(path) as f:
                json.dump(partition.to_dict(), f, ensure_ascii=False, indent=2)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write partition {path.name}: {e}") from e

    def _delete_partition(self, day: str) -> None:
        try:
            self.partition_path(day).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete partition {day}: {e}") from e

    # ============ Raw records ============

    def save_summary(self, record: SummaryRecord,
                     retention: Optional[RetentionPolicy] = None) -> List[AggregatedRecord]:
        """Append a record to its day partition.

        Any aggregation window completed by this append is merged into an
        AggregatedRecord in the same write. When ``retention`` is given,
        maintenance runs afterwards if it has not run in the last minute.

        Args:
            record: The record to append.
            retention: Limits to enforce, or None to skip maintenance.

        Returns:
            AggregatedRecords created by this append (usually empty).

        Raises:
            StorageError: If the partition cannot be read or written.
        """
        with self._write_lock:
            partition = self.load_partition(record.date)
            partition.entries.append(record)
            created = self._aggregate_completed_windows(partition)
            self._write_partition(partition)

        for aggregated in created:
            logger.info(f"Aggregated window {aggregated.window_index} of {partition.date} "
                        f"({aggregated.record_count} records)")

        if retention is not None:
            self.maybe_run_maintenance(retention)
        return created

    def get_summaries(self, day: Union[str, date]) -> List[SummaryRecord]:
        return self.load_partition(day).records

    def get_aggregated(self, day: Union[str, date]) -> List[AggregatedRecord]:
        return self.load_partition(day).aggregated

    def iter_partitions(self, start: Optional[date] = None,
                        end: Optional[date] = None) -> Iterator[DayPartition]:
        """Existing partitions between two dates (inclusive), oldest first."""
        start_str = _to_date_str(start) if start else None
        end_str = _to_date_str(end) if end else None
        for day in self.list_dates():
            if start_str and day < start_str:
                continue
            if end_str and day > end_str:
                continue
            yield self.load_partition(day)

    def get_recent_summaries(self, limit: int = 8, minutes: int = 3,
                             now: Optional[datetime] = None) -> List[SummaryRecord]:
        """Up to ``limit`` most recent records from the last ``minutes``, oldest first."""
        now = now or self._clock()
        cutoff = format_timestamp(now - timedelta(minutes=minutes))
        recent: List[SummaryRecord] = []
        for partition in self.iter_partitions(start=(now - timedelta(minutes=minutes)).date(),
                                               end=now.date()):
            recent.extend(r for r in partition.records if r.timestamp >= cutoff)
        if limit <= 0:
            return []
        return recent[-limit:]

    def get_latest_summary(self) -> Optional[SummaryRecord]:
        """Most recently appended record, searching back from the newest day."""
        for day in reversed(self.list_dates()):
            records = self.get_summaries(day)
            if records:
                return records[-1]
        return None

    def count_records(self) -> int:
        """Raw records currently stored across all partitions."""
        return sum(len(p.records) for p in self.iter_partitions())

    # ============ Aggregation ============

    def _aggregate_completed_windows(self, partition: DayPartition) -> List[AggregatedRecord]:
        """Merge every window that has been followed by at least one newer record.

        A window only counts as complete once a record of the next window
        exists, so the first AggregatedRecord appears with the 301st raw
        record. Windows are numbered by absolute position in the day, which
        keeps them contiguous and non-overlapping after evictions.
        """
        done = partition.aggregated_windows()
        next_window = max(done) + 1 if done else 0
        created: List[AggregatedRecord] = []

        records = partition.records
        while (next_window + 1) * self.window_size < partition.raw_total:
            members = [r for i, r in enumerate(records)
                       if partition.window_of(i, self.window_size) == next_window]
            if members:
                aggregated = aggregate_records(members, next_window)
                partition.entries.append(aggregated)
                created.append(aggregated)
            next_window += 1
        return created

    # ============ Retention ============

    def maybe_run_maintenance(self, retention: RetentionPolicy) -> Optional[MaintenanceReport]:
        """Run maintenance unless it already ran within the last minute.

        Failures are logged, not raised; the append has already succeeded.
        """
        now = self._clock()
        if (self._last_maintenance is not None
                and (now - self._last_maintenance).total_seconds() < MAINTENANCE_INTERVAL_SECONDS):
            return None
        try:
            return self.run_maintenance(retention)
        except StorageError as e:
            logger.error(f"Retention maintenance failed: {e}")
            return None

    def run_maintenance(self, retention: RetentionPolicy,
                        today: Optional[date] = None) -> MaintenanceReport:
        """Apply the retention boundary.

        1. Delete day partitions dated before today - retention_days, with
           their screenshot folders and old log files.
        2. If more than max_screenshots raw records remain, evict raw records
           oldest first across partitions (and their screenshot files).

        Args:
            retention: Age and count limits.
            today: Reference date (default: today per the storage clock).

        Returns:
            MaintenanceReport describing what was removed.

        Raises:
            StorageError: If a partition cannot be read, written or deleted.
        """
        today = today or self._clock().date()
        cutoff = _to_date_str(today - timedelta(days=max(1, retention.retention_days)))
        report = MaintenanceReport()

        with self._write_lock:
            self._last_maintenance = self._clock()

            for day in self.list_dates():
                if day < cutoff:
                    self._delete_partition(day)
                    report.removed_days.append(day)

            screenshot_folders = list(self.screenshots_dir.iterdir()) if self.screenshots_dir.exists() else []
            for folder in screenshot_folders:
                if folder.is_dir() and folder.name < cutoff:
                    shutil.rmtree(folder, ignore_errors=True)
                    report.removed_screenshot_dirs += 1

            report.removed_logs = self._purge_logs(cutoff)
            report.evicted_records = self._enforce_record_cap(retention.max_screenshots)

        if report.removed_days or report.evicted_records:
            logger.info(f"Retention removed {len(report.removed_days)} day(s) and evicted "
                        f"{report.evicted_records} record(s)")
        return report

    def _enforce_record_cap(self, max_records: int) -> int:
        partitions = list(self.iter_partitions())
        excess = sum(len(p.records) for p in partitions) - max(1, max_records)
        evicted_total = 0

        for partition in partitions:
            if excess <= 0:
                break
            records = partition.records
            drop = records[:min(excess, len(records))]
            if not drop:
                continue
            dropped = {id(r) for r in drop}
            partition.entries = [e for e in partition.entries if id(e) not in dropped]
            partition.evicted += len(drop)
            excess -= len(drop)
            evicted_total += len(drop)

            for record in drop:
                if record.detail_ref:
                    try:
                        (self.screenshots_dir / record.detail_ref).unlink(missing_ok=True)
                    except OSError as e:
                        logger.warning(f"Could not delete screenshot {record.detail_ref}: {e}")

            if partition.entries:
                self._write_partition(partition)
            else:
                self._delete_partition(partition.date)
        return evicted_total

    def _purge_logs(self, cutoff: str) -> int:
        removed = 0
        compact_cutoff = cutoff.replace("-", "")
        for path in self.logs_dir.glob("*.log"):
            if path.name[:8].isdigit() and path.name[:8] < compact_cutoff:
                try:
                    path.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning(f"Could not delete log {path.name}: {e}")
        return removed

    # ============ Diagnostics ============

    def write_log_snapshot(self, prefix: str, content: str) -> Path:
        """Write a diagnostic snapshot to logs/<timestamp>-<prefix>.log.

        Raises:
            StorageError: If the file cannot be written.
        """
        now = self._clock()
        clean = "".join(ch for ch in prefix if ch.isascii() and (ch.isalnum() or ch in "-_")) or "log"
        path = self.logs_dir / f"{now:%Y%m%d-%H%M%S}-{now.microsecond // 1000:03d}-{clean}.log"
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to write log {path.name}: {e}") from e
        return path
