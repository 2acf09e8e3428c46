"""Activity search and context assembly.

The query engine answers "what was I doing" style questions from the stored
history. A query is parsed into a time range and keywords, records in range
are collected from the day partitions, and the result is rendered into a
bounded block of text suitable for a model prompt.

Retrieval policy:
- If the raw records in range fit in one aggregation window, return them raw.
- Otherwise raw records of already-aggregated windows are replaced by their
  AggregatedRecord; the unaggregated tail of each day stays raw.
- Aggregates whose raw records were all evicted always stand in for them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from .storage import (
    ActivityStorage, AggregatedRecord, DayPartition, SummaryRecord, format_timestamp,
)
from .timeparser import ParsedQuery, TimeParser

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_CHARS = 10000
NO_RECORDS_TEXT = "No matching activity records."
OMISSION_MARKER = "...({count} earlier entries omitted)"

Entry = Union[SummaryRecord, AggregatedRecord]


def _record_text(record: SummaryRecord) -> str:
    return " ".join([record.summary, record.app, record.detail, record.issue_summary,
                     " ".join(record.keywords)]).lower()


def _aggregated_text(record: AggregatedRecord) -> str:
    return " ".join([record.summary, " ".join(record.apps), " ".join(record.main_activities),
                     " ".join(record.keywords), record.error_summary or ""]).lower()


def matches_keywords(entry: Entry, keywords: List[str]) -> bool:
    """True when ``keywords`` is empty or any keyword occurs in the entry's text."""
    if not keywords:
        return True
    text = _aggregated_text(entry) if isinstance(entry, AggregatedRecord) else _record_text(entry)
    return any(keyword.lower() in text for keyword in keywords)


def render_entry(entry: Entry, include_detail: bool = False) -> str:
    """One context block for an entry: a line, plus indented detail lines."""
    if isinstance(entry, AggregatedRecord):
        apps = f" ({', '.join(entry.apps)})" if entry.apps else ""
        text = (f"- [{entry.start_time[:16].replace('T', ' ')} ~ {entry.end_time[11:16]}] "
                f"{entry.summary}{apps}, {entry.record_count} captures")
        if entry.has_errors and entry.error_summary:
            text += f"\n  errors: {entry.error_summary}"
        return text

    app = "" if entry.app in ("", "Unknown") else f" [{entry.app}]"
    text = f"- [{entry.timestamp.replace('T', ' ')}]{app} {entry.summary}"
    if entry.has_issue and entry.issue_summary:
        text += f"\n  issue: {entry.issue_summary}"
    if include_detail and entry.detail:
        text += "\n  detail: " + entry.detail.replace("\n", " ")
    return text


@dataclass
class SearchResult:
    """Records selected for a query.

    Attributes:
        query: The parsed query
        records: Raw records returned, chronological
        aggregated: Aggregated records standing in for raw ones, chronological
        raw_in_range: Raw records in the time range before replacement and filtering
    """
    query: ParsedQuery
    records: List[SummaryRecord] = field(default_factory=list)
    aggregated: List[AggregatedRecord] = field(default_factory=list)
    raw_in_range: int = 0

    @property
    def entries(self) -> List[Entry]:
        """Both tiers merged in chronological order."""
        return sorted([*self.aggregated, *self.records], key=lambda e: e.timestamp)

    def build_context(self, max_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
                      include_detail: bool = False) -> str:
        """Render the result as chronological text of at most ``max_chars``.

        When everything does not fit, the oldest entries are dropped first
        and an omission marker takes their place at the top.

        Args:
            max_chars: Upper bound on the returned text length.
            include_detail: Append each record's detail text.

        Returns:
            The context text, or a fixed message when there are no entries.
        """
        blocks = [render_entry(e, include_detail) for e in self.entries]
        if not blocks:
            return NO_RECORDS_TEXT

        # newest first while filling the budget
        kept: List[str] = []
        used = 0
        for block in reversed(blocks):
            cost = len(block) + (1 if kept else 0)
            if used + cost > max_chars:
                break
            kept.append(block)
            used += cost

        omitted = len(blocks) - len(kept)
        if not omitted:
            return "\n".join(reversed(kept))

        marker = OMISSION_MARKER.format(count=omitted)
        while kept and used + len(marker) + 1 > max_chars:
            dropped = kept.pop()
            used -= len(dropped) + (1 if kept else 0)
            omitted += 1
            marker = OMISSION_MARKER.format(count=omitted)

        if not kept:
            # not even the newest entry fits whole: keep its head
            marker = OMISSION_MARKER.format(count=len(blocks) - 1)
            room = max(0, max_chars - len(marker) - 1)
            return "\n".join([marker, blocks[-1][:room]]) if room else marker[:max_chars]

        return "\n".join([marker, *reversed(kept)])


class QueryEngine:
    """Answers natural-language queries from an ActivityStorage.

    Example:
        >>> engine = QueryEngine(storage)
        >>> result = engine.search("errors in the last 10 minutes")
        >>> print(result.build_context(2000))
    """

    def __init__(self, storage: ActivityStorage):
        self.storage = storage

    def search(self, text: str, now: Optional[datetime] = None) -> SearchResult:
        """Parse ``text`` and collect the matching records.

        Raises:
            StorageError: If a partition in range cannot be read.
        """
        query = TimeParser(now).parse(text)
        start = format_timestamp(query.start) if query.has_range else None
        end = format_timestamp(query.end) if query.has_range else None

        partitions = list(self.storage.iter_partitions(
            start=query.start.date() if query.has_range else None,
            end=query.end.date() if query.has_range else None,
        ))

        def in_range(timestamp: str) -> bool:
            return start is None or start <= timestamp <= end

        raw_in_range = sum(1 for p in partitions for r in p.records if in_range(r.timestamp))
        result = SearchResult(query=query, raw_in_range=raw_in_range)
        use_aggregates = raw_in_range > self.storage.window_size

        for partition in partitions:
            records, aggregated = self._select(partition, in_range, start, end, use_aggregates)
            result.records.extend(r for r in records if matches_keywords(r, query.keywords))
            result.aggregated.extend(a for a in aggregated if matches_keywords(a, query.keywords))

        logger.debug(f"Search {text!r}: {query.label}, keywords={query.keywords}, "
                     f"{raw_in_range} raw in range, returned {len(result.records)} raw "
                     f"+ {len(result.aggregated)} aggregated")
        return result

    def _select(self, partition: DayPartition, in_range, start: Optional[str],
                end: Optional[str], use_aggregates: bool):
        window_size = self.storage.window_size
        windows_with_raw = {partition.window_of(i, window_size)
                            for i in range(len(partition.records))}

        def overlaps(aggregate: AggregatedRecord) -> bool:
            return start is None or (aggregate.start_time <= end and aggregate.end_time >= start)

        if use_aggregates:
            aggregated = [a for a in partition.aggregated if overlaps(a)]
            covered = {a.window_index for a in partition.aggregated}
            records = [r for i, r in enumerate(partition.records)
                       if in_range(r.timestamp) and partition.window_of(i, window_size) not in covered]
        else:
            aggregated = [a for a in partition.aggregated
                          if a.window_index not in windows_with_raw and overlaps(a)]
            records = [r for r in partition.records if in_range(r.timestamp)]
        return records, aggregated

    def build_context(self, text: str, max_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
                      include_detail: bool = False, now: Optional[datetime] = None) -> str:
        """Search and render in one step, headed by the resolved time range."""
        result = self.search(text, now)
        header = f"Activity records ({result.query.label}):"
        body = result.build_context(max(0, max_chars - len(header) - 1), include_detail)
        return f"{header}\n{body}"

    def ask(self, question: str, client, max_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
            include_detail: bool = False, now: Optional[datetime] = None) -> str:
        """Answer ``question`` with the model, grounded on the matching records.

        Raises:
            ModelError: If the chat call fails.
            StorageError: If a partition in range cannot be read.
        """
        context = self.build_context(question, max_chars, include_detail, now)
        logger.info(f"Answering question with {len(context)} chars of context")
        return client.chat(context, question)
