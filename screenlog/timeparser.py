"""Natural language time range parser for screenlog queries.

This module turns a free-text question such as "what was I debugging in the
last 10 minutes" into a time range plus the leftover keywords. Time phrases
are recognized anywhere in the text by an ordered list of rules; the first
rule that matches wins. Text with no recognizable time phrase is not an
error: the range is left open and the whole retained history is searched.

Supported phrases:
- Instant: "just now", "right now", "a moment ago" (last 5 minutes)
- Duration: "last 10 minutes", "past 2 hours", "last 3 days", "last hour"
- Offsets: "20 minutes ago", "2 hours ago"
- Periods: "this morning", "this afternoon", "this evening", "yesterday afternoon"
- Days: "today", "yesterday", "this week", "last week", "this month"
- Exact dates: "2026-10-15", "2026-10-01 to 2026-10-07"

Example:
    >>> parser = TimeParser(datetime(2026, 10, 17, 15, 0))
    >>> query = parser.parse("errors in the last 10 minutes")
    >>> query.start, query.end
    (datetime.datetime(2026, 10, 17, 14, 50), datetime.datetime(2026, 10, 17, 15, 0))
    >>> query.keywords
    ['errors']
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from dateutil import parser as dateutil_parser

Range = Tuple[datetime, datetime]

JUST_NOW_MINUTES = 5

UNIT_SECONDS = {"min": 60, "hour": 3600, "hr": 3600, "day": 86400}

STOP_WORDS = frozenset("""
a an the and or but of in on at to for from with about into over by
what when where which who whom how why whats
did do does doing done was were is are be been being have has had
i me my mine we our you your it its this that these those there here
show tell find search list give get see look any anything all some
during between since ago until up out just please can could would should
happen happened happening going go went spent spend spending time
work worked working busy activity activities recent recently lately
summarize summarise summary recap overview overall while much many
""".split())


@dataclass(frozen=True)
class ParsedQuery:
    """Result of parsing a query.

    Attributes:
        start: Range start, None when the text named no time
        end: Range end, None when the text named no time
        label: Human-readable description of the range
        keywords: Remaining search terms, lower-cased
    """
    start: Optional[datetime]
    end: Optional[datetime]
    label: str
    keywords: List[str] = field(default_factory=list)

    @property
    def has_range(self) -> bool:
        return self.start is not None and self.end is not None


class TimeParser:
    """Parse time phrases embedded in natural language queries.

    Attributes:
        now: Reference datetime for relative calculations
        today_start: Start of the reference day at midnight
    """

    def __init__(self, reference_time: datetime = None):
        """Initialize TimeParser with optional reference time.

        Args:
            reference_time: Base datetime for relative calculations.
                If None, uses current datetime.
        """
        self.now = reference_time or datetime.now()
        self.today_start = self.now.replace(hour=0, minute=0, second=0, microsecond=0)
        self.rules: List[Tuple[re.Pattern, Callable[[re.Match], Range]]] = [
            (re.compile(r"\b(?:just now|right now|a moment ago)\b"),
             lambda m: (self.now - timedelta(minutes=JUST_NOW_MINUTES), self.now)),
            (re.compile(r"\b(?:last|past) (\d+) (min|hour|hr|day)(?:ute)?s?\b"),
             self._last_n),
            (re.compile(r"\b(\d+) (min|hour|hr)(?:ute)?s? ago\b"),
             self._n_ago),
            (re.compile(r"\b(?:last|past) hour\b"),
             lambda m: (self.now - timedelta(hours=1), self.now)),
            (re.compile(r"\bthis (morning|afternoon|evening)\b"),
             lambda m: self._period(self.today_start, m.group(1), clip=True)),
            (re.compile(r"\byesterday (morning|afternoon|evening)\b"),
             lambda m: self._period(self.today_start - timedelta(days=1), m.group(1))),
            (re.compile(r"\btoday\b"),
             lambda m: (self.today_start, self.now)),
            (re.compile(r"\byesterday\b"),
             lambda m: (self.today_start - timedelta(days=1),
                        self.today_start - timedelta(seconds=1))),
            (re.compile(r"\bthis week\b"),
             lambda m: (self.today_start - timedelta(days=self.now.weekday()), self.now)),
            (re.compile(r"\blast week\b"),
             lambda m: self._last_week()),
            (re.compile(r"\bthis month\b"),
             lambda m: (self.today_start.replace(day=1), self.now)),
            (re.compile(r"\b(\d{4}-\d{2}-\d{2}) to (\d{4}-\d{2}-\d{2})\b"),
             lambda m: self._date_range(m.group(1), m.group(2))),
            (re.compile(r"\b(\d{4}-\d{2}-\d{2})\b"),
             lambda m: self._date_range(m.group(1), m.group(1))),
        ]

    def parse(self, text: str) -> ParsedQuery:
        """Parse ``text`` into a ParsedQuery. Never raises.

        Args:
            text: Free-text query, with or without a time phrase.

        Returns:
            ParsedQuery; start and end are None when no rule matched.
        """
        lowered = (text or "").lower().strip()

        for pattern, resolver in self.rules:
            match = pattern.search(lowered)
            if not match:
                continue
            try:
                start, end = resolver(match)
            except (ValueError, OverflowError):
                # e.g. 2026-02-30 or an absurd number of days
                continue
            residual = lowered[:match.start()] + " " + lowered[match.end():]
            return ParsedQuery(start, end, self.describe_range(start, end),
                               extract_keywords(residual))

        return ParsedQuery(None, None, "all history", extract_keywords(lowered))

    def _last_n(self, match: re.Match) -> Range:
        amount, unit = int(match.group(1)), match.group(2)
        if unit == "day":
            return (self.today_start - timedelta(days=amount), self.now)
        return (self.now - timedelta(seconds=amount * UNIT_SECONDS[unit]), self.now)

    def _n_ago(self, match: re.Match) -> Range:
        offset = timedelta(seconds=int(match.group(1)) * UNIT_SECONDS[match.group(2)])
        return (self.now - offset, self.now)

    def _period(self, day_start: datetime, name: str, clip: bool = False) -> Range:
        hours = {"morning": (6, 12), "afternoon": (12, 18), "evening": (18, 24)}[name]
        start = day_start + timedelta(hours=hours[0])
        end = day_start + timedelta(hours=hours[1]) - timedelta(seconds=1)
        if clip:
            end = min(end, self.now)
        return (start, end)

    def _last_week(self) -> Range:
        """Get Monday to Sunday of previous week."""
        last_monday = self.today_start - timedelta(days=self.now.weekday() + 7)
        last_sunday = last_monday + timedelta(days=6, hours=23, minutes=59, seconds=59)
        return (last_monday, last_sunday)

    def _date_range(self, start_str: str, end_str: str) -> Range:
        start = dateutil_parser.isoparse(start_str)
        end = dateutil_parser.isoparse(end_str).replace(hour=23, minute=59, second=59)
        return (start, end)

    def describe_range(self, start: datetime, end: datetime) -> str:
        """Generate human-readable description of a time range.

        Args:
            start: Start datetime of the range.
            end: End datetime of the range.

        Returns:
            Formatted string describing the range.
        """
        if start.date() == end.date():
            return f"{start.strftime('%A, %B %d, %Y')} {start.strftime('%H:%M')}-{end.strftime('%H:%M')}"
        elif (end - start).days <= 7:
            return f"{start.strftime('%b %d')} - {end.strftime('%b %d, %Y')}"
        else:
            return f"{start.strftime('%B %d')} - {end.strftime('%B %d, %Y')}"


def extract_keywords(text: str) -> List[str]:
    """Search terms left in ``text``: lower-cased, stop words and 1-char tokens dropped."""
    keywords = []
    for token in re.findall(r"[\w][\w.+#-]*", text.lower()):
        token = token.rstrip(".-")
        if len(token) < 2 or token in STOP_WORDS or token in keywords:
            continue
        keywords.append(token)
    return keywords
