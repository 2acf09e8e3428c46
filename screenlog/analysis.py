"""Analysis prompt construction and reply parsing.

Vision models are asked for a single JSON object, but in practice replies
arrive as bare JSON, JSON inside a Markdown fence, JSON wrapped in prose, or
plain prose. ``parse_analysis`` accepts all of these; when no JSON can be
recovered it falls back to heuristics (first line as summary, known app
names, error keywords) so that every reply yields a usable record.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .storage import SummaryRecord

logger = logging.getLogger(__name__)

NO_RECENT_CONTEXT = "(none)"

ANALYSIS_PROMPT = """You are a screenshot analyzer. Output exactly one parseable JSON object and nothing else: no explanation, no Markdown, no code fences.

Required fields:
{{
  "summary": "One sentence (15-30 words) on what the user is doing, with which tool, on what content",
  "detail": "Detailed description of the screen: main windows and regions, visible text, buttons, input and output, error messages",
  "app": "Main application or window name, Unknown if it cannot be determined",
  "has_issue": true or false,
  "issue_type": "Short issue category when has_issue is true, otherwise an empty string",
  "issue_summary": "The concrete error or message shown when has_issue is true, otherwise an empty string",
  "suggestion": "When has_issue is true: the most likely cause and concrete steps to fix it, otherwise an empty string",
  "confidence": a number between 0.0 and 1.0 for how sure you are of this analysis
}}

Rules:
- has_issue is true only when the screen shows an explicit error, failure or blocking message
- issue_type is 1-4 words (e.g. compile error, network error, permission denied, frozen window)
- issue_summary quotes or names the specific error text, not a generic description
- detail describes only what is visible; do not guess at hidden content

Recent activity (for reference only, may be incomplete):
{recent_context}
"""

ISSUE_MARKERS = (
    "error", "failed", "failure", "exception", "traceback", "cannot", "can't",
    "unable to", "not found", "not responding", "crashed", "permission denied",
)

KNOWN_APPS = (
    "Visual Studio Code", "VS Code", "PyCharm", "IntelliJ", "Chrome", "Firefox",
    "Edge", "Safari", "Slack", "Discord", "Teams", "Zoom", "Word", "Excel",
    "PowerPoint", "Notion", "Obsidian", "Terminal", "PowerShell", "CMD",
)

KEYWORD_EXTENSIONS = (".py", ".rs", ".ts", ".js", ".vue", ".tsx", ".jsx", ".md", ".json", ".yaml")

KEYWORD_ACTIONS = (
    "editing", "browsing", "searching", "debugging", "running", "writing",
    "reading", "chatting", "reviewing", "error", "failed", "stuck",
)

DETAIL_KEYS = ("detail", "detail_description", "image_detail", "image_description", "screen_detail")


@dataclass
class AnalysisResult:
    """Structured view of one model reply.

    Attributes:
        summary: Short description of the activity
        app: Main application, "Unknown" when not recognizable
        detail: Longer description of the visible content
        has_issue: Whether the screen shows a problem
        issue_type: Short issue category ("detected" on the heuristic path)
        issue_message: The concrete problem text
        suggestion: Remediation hint, possibly filled in later
        confidence: 0.0-1.0
        structured: True when the reply contained parseable JSON
    """
    summary: str = ""
    app: str = "Unknown"
    detail: str = ""
    has_issue: bool = False
    issue_type: str = ""
    issue_message: str = ""
    suggestion: str = ""
    confidence: float = 0.0
    structured: bool = False

    @property
    def issue_text(self) -> str:
        """Issue message, or the summary when the model gave none."""
        return self.issue_message or self.summary


def build_analysis_prompt(recent_context: str) -> str:
    return ANALYSIS_PROMPT.format(recent_context=recent_context or NO_RECENT_CONTEXT)


def build_recent_context(records: Sequence[SummaryRecord], detail_limit: int = 3) -> str:
    """Render recent records as prompt lines, oldest first.

    Only the newest ``detail_limit`` records carry their detail text, which
    keeps the prompt short while giving the model the immediate history.
    """
    if not records:
        return NO_RECENT_CONTEXT

    detail_start = len(records) - max(0, min(detail_limit, len(records)))
    lines = []
    for index, record in enumerate(records):
        app = "" if record.app in ("", "Unknown") else f" [{record.app}]"
        line = f"- {record.timestamp[11:19]}{app} {record.summary}"
        if index >= detail_start and record.detail:
            line += "\n  detail: " + record.detail.replace("\n", " ")
        lines.append(line)
    return "\n".join(lines)


def _fenced_body(text: str) -> Optional[str]:
    match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    return match.group(1).strip() if match else None


def _braced_body(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def extract_json_object(text: str) -> Optional[dict]:
    """Find a JSON object in ``text``: whole text, fenced block, then outer braces."""
    for candidate in (text, _fenced_body(text), _braced_body(text)):
        if not candidate:
            continue
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def parse_confidence(value: Any, has_issue: bool) -> float:
    """Coerce a confidence value; words high/medium/low are accepted.

    Missing or unreadable values fall back to 0.5 for issues and 0.2 otherwise.
    """
    fallback = 0.5 if has_issue else 0.2
    if isinstance(value, bool):
        result = fallback
    elif isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        words = {"high": 0.9, "medium": 0.6, "low": 0.3}
        text = value.strip().lower()
        if text in words:
            result = words[text]
        else:
            try:
                result = float(text)
            except ValueError:
                result = fallback
    else:
        result = fallback
    return max(0.0, min(1.0, result))


def _first_str(data: dict, *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str):
            return value
    return ""


def parse_analysis(reply: str) -> AnalysisResult:
    """Turn a raw model reply into an AnalysisResult. Never raises."""
    data = extract_json_object(reply)
    if data is not None:
        has_issue = data.get("has_issue", data.get("has_error"))
        has_issue = has_issue if isinstance(has_issue, bool) else False
        issue_type = _first_str(data, "issue_type", "error_type").strip()
        issue_message = _first_str(data, "issue_summary", "error_message").strip()
        suggestion = _first_str(data, "suggestion").strip()
        confidence = parse_confidence(data.get("confidence"), has_issue)

        # a model that names an issue but forgets the flag still reports an issue
        if not has_issue and (issue_type or issue_message or suggestion):
            has_issue = True

        return AnalysisResult(
            summary=_first_str(data, "summary").strip(),
            app=_first_str(data, "app").strip() or "Unknown",
            detail=_first_str(data, *DETAIL_KEYS).strip(),
            has_issue=has_issue,
            issue_type=issue_type,
            issue_message=issue_message,
            suggestion=suggestion,
            confidence=confidence,
            structured=True,
        )

    logger.debug("Model reply is not JSON, using heuristic parsing")
    text = reply.strip()
    lowered = text.lower()
    has_issue = any(marker in lowered for marker in ISSUE_MARKERS)
    return AnalysisResult(
        summary=text.splitlines()[0].strip() if text else "",
        app=extract_app(text),
        detail=text,
        has_issue=has_issue,
        issue_type="detected" if has_issue else "",
        issue_message=text if has_issue else "",
        confidence=0.4 if has_issue else 0.2,
    )


def extract_app(text: str) -> str:
    """First known application name mentioned in ``text``, else "Unknown"."""
    for app in KNOWN_APPS:
        if app in text:
            return app
    return "Unknown"


def extract_keywords(text: str) -> List[str]:
    """File extensions and activity words mentioned in ``text``."""
    lowered = text.lower()
    keywords = [ext for ext in KEYWORD_EXTENSIONS
                if re.search(re.escape(ext) + r"\b", lowered)]
    keywords += [word for word in KEYWORD_ACTIONS
                 if re.search(r"\b" + re.escape(word) + r"\b", lowered)]
    return keywords


def build_record(result: AnalysisResult, timestamp: str, provider: str,
                 detail_ref: str = "") -> SummaryRecord:
    """SummaryRecord for one analyzed capture."""
    return SummaryRecord(
        timestamp=timestamp,
        summary=result.summary,
        provider=provider,
        app=result.app,
        action="issue" if result.has_issue else "active",
        keywords=extract_keywords(result.summary),
        confidence=result.confidence,
        detail=result.detail,
        detail_ref=detail_ref,
        error_tag=(result.issue_type or None) if result.has_issue else None,
        issue_summary=result.issue_text if result.has_issue else "",
        suggestion=result.suggestion,
    )
