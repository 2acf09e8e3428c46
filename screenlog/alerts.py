"""Proactive alerts for problems seen on screen and for model failures.

After each analyzed capture the AlertPipeline decides whether the user should
be told about a problem: the analysis must report an issue with enough
confidence, the issue must differ from the one seen on the previous tick,
the same issue must not have been announced within the cooldown, and the
issue must not be about screenlog's own windows. Alerts are published to an
AlertChannel that any number of consumers can subscribe to.

Nothing in this module is allowed to fail a capture tick: every error is
logged and swallowed.
"""

import logging
import queue
import re
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import ClassVar, Dict, List, Optional, Tuple

from .analysis import AnalysisResult
from .config import CaptureConfig
from .storage import SummaryRecord, format_timestamp

logger = logging.getLogger(__name__)

MIN_COOLDOWN_SECONDS = 5
SUGGESTION_FALLBACK = "Could not generate a suggestion. Check the details or try again later."
SUGGESTION_QUESTION = ("Based on the information above, give 1-3 concrete, actionable steps "
                       "to resolve the problem. Do not restate the background.")

SELF_APP_NAMES = ("screenlog", "screen assistant")
SELF_VIEW_MARKERS = ("history", "conversation", "chat", "alert", "warning", "settings")


@dataclass(frozen=True)
class AssistantAlert:
    """A problem detected on screen."""
    KIND: ClassVar[str] = "assistant-alert"

    timestamp: str
    issue_type: str
    message: str
    suggestion: str
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return {"kind": self.KIND, **asdict(self)}


@dataclass(frozen=True)
class ModelErrorAlert:
    """A model call failed; ``detail`` carries the raw error text."""
    KIND: ClassVar[str] = "model-error"

    timestamp: str
    error_type: str
    message: str
    suggestion: str
    detail: str
    source: str

    def to_dict(self) -> dict:
        return {"kind": self.KIND, **asdict(self)}


class AlertChannel:
    """Fan-out of alert events to subscriber queues.

    Publishing never blocks: when a subscriber's queue is full the event is
    dropped for that subscriber and a warning is logged.
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event) -> int:
        """Deliver ``event`` to every subscriber; returns how many received it."""
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for q in subscribers:
            try:
                q.put_nowait(event)
                delivered += 1
            except queue.Full:
                logger.warning(f"Alert queue full, dropping {type(event).__name__}")
        return delivered


# (error_type, status codes, text markers, message, suggestion), checked in order
MODEL_ERROR_RULES: Tuple[Tuple[str, Tuple[int, ...], Tuple[str, ...], str, str], ...] = (
    ("unauthorized", (401, 403),
     ("unauthorized", "invalid api key", "authentication", "api key is required"),
     "API key rejected or missing", "Check the API key, its permissions and the endpoint"),
    ("insufficient_quota", (402,),
     ("insufficient_quota", "quota", "balance", "billing", "payment"),
     "Account balance or quota exhausted", "Top up the account or switch to another key"),
    ("rate_limit", (429,),
     ("rate limit", "too many requests"),
     "Requests are being rate limited", "Lower the capture frequency or retry later"),
    ("timeout", (408, 504),
     ("timeout", "timed out"),
     "Model request timed out", "Check the network or retry later"),
    ("network", (),
     ("dns", "name resolution", "connection refused", "connection reset", "connect", "network"),
     "Cannot reach the model endpoint", "Check the network, proxy settings and endpoint address"),
    ("invalid_request", (400, 404, 422),
     ("invalid", "model not found", "not json", "unexpected response", "empty reply"),
     "Request or model name rejected", "Confirm the model name and that the endpoint matches the API type"),
    ("server_error", (500, 502, 503),
     (),
     "Model server error", "Retry later or switch endpoint"),
)


def classify_model_error(error) -> Tuple[str, str, str]:
    """Map a model failure to (error_type, message, suggestion).

    The HTTP status is used when the error carries one, then the error text.

    Example:
        >>> classify_model_error("HTTP 429 from https://api.example.com: slow down")[0]
        'rate_limit'
    """
    status = getattr(error, "status_code", None)
    if status is not None:
        for error_type, codes, _, message, suggestion in MODEL_ERROR_RULES:
            if status in codes:
                return error_type, message, suggestion
        if status >= 500:
            return MODEL_ERROR_RULES[-1][0], MODEL_ERROR_RULES[-1][3], MODEL_ERROR_RULES[-1][4]

    text = str(error).lower()
    for error_type, codes, markers, message, suggestion in MODEL_ERROR_RULES:
        if any(marker in text for marker in markers) or any(re.search(rf"\b{c}\b", text) for c in codes):
            return error_type, message, suggestion
    return "unknown", "Model call failed", "See the error detail or the logs"


def normalize_issue_text(text: str) -> str:
    """Lower-case, digits dropped, whitespace collapsed: "Line 42 failed" -> "line failed"."""
    return " ".join(re.sub(r"\d+", " ", text).lower().split())


def build_issue_key(analysis: AnalysisResult) -> str:
    """Identity of an issue across ticks: its type, else its normalized message."""
    issue_type = analysis.issue_type.strip().lower()
    return issue_type or normalize_issue_text(analysis.issue_text)


def is_self_view(analysis: AnalysisResult) -> bool:
    """True when the issue is screenlog showing its own history, alerts or settings."""
    app = analysis.app.lower()
    combined = " ".join([analysis.app, analysis.summary, analysis.detail,
                         analysis.issue_message]).lower()
    has_marker = any(marker in combined for marker in SELF_VIEW_MARKERS)

    if any(name in app for name in SELF_APP_NAMES):
        return has_marker
    if app in ("", "unknown") and any(name in combined for name in SELF_APP_NAMES):
        return has_marker
    return False


class AlertPipeline:
    """Decides, enriches and publishes alerts for analyzed captures.

    Attributes:
        channel: Where alerts are published
        storage: Optional ActivityStorage for alert log snapshots
    """

    def __init__(self, channel: AlertChannel, storage=None):
        self.channel = channel
        self.storage = storage
        self._last_issue_key: Optional[str] = None
        self._recent: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @property
    def last_issue_key(self) -> Optional[str]:
        with self._lock:
            return self._last_issue_key

    def reset(self) -> None:
        with self._lock:
            self._last_issue_key = None
            self._recent.clear()

    def _outside_cooldown(self, key: str, now: datetime, cooldown_seconds: int) -> bool:
        """Claim ``key`` for ``now`` unless it was claimed within the cooldown."""
        cooldown = timedelta(seconds=max(MIN_COOLDOWN_SECONDS, cooldown_seconds))
        with self._lock:
            previous = self._recent.get(key)
            if previous is not None and now - previous < cooldown:
                return False
            self._recent[key] = now
            return True

    def inspect(self, record: SummaryRecord, analysis: AnalysisResult,
                capture_config: CaptureConfig, client=None, recent_context: str = "",
                now: Optional[datetime] = None) -> Tuple[SummaryRecord, Optional[AssistantAlert]]:
        """Decide whether ``record`` warrants an alert.

        A missing suggestion is requested from ``client`` and written into the
        returned record, so the stored record carries it too. The alert is
        returned, not published; call ``publish`` once the record is stored.

        Returns:
            (record, alert) where alert is None when nothing should be shown.
        """
        try:
            return self._inspect(record, analysis, capture_config, client, recent_context,
                                 now or datetime.now())
        except Exception as e:
            logger.error(f"Alert inspection failed: {e}", exc_info=True)
            return record, None

    def _inspect(self, record, analysis, capture_config, client, recent_context, now):
        threshold = max(0.0, min(1.0, capture_config.alert_confidence_threshold))
        if not analysis.has_issue or analysis.confidence < threshold or is_self_view(analysis):
            with self._lock:
                self._last_issue_key = None
            return record, None

        key = build_issue_key(analysis)
        with self._lock:
            repeated = self._last_issue_key == key
            self._last_issue_key = key
        if repeated:
            logger.debug(f"Issue {key!r} still on screen, not alerting again")
            return record, None
        if not self._outside_cooldown(key, now, capture_config.alert_cooldown_seconds):
            logger.debug(f"Issue {key!r} within cooldown")
            return record, None

        suggestion = analysis.suggestion.strip()
        if not suggestion:
            suggestion = self._request_suggestion(client, analysis, recent_context)
            record = replace(record, suggestion=suggestion)

        alert = AssistantAlert(
            timestamp=record.timestamp,
            issue_type=analysis.issue_type,
            message=analysis.issue_text,
            suggestion=suggestion,
            confidence=analysis.confidence,
        )
        return record, alert

    def _request_suggestion(self, client, analysis: AnalysisResult, recent_context: str) -> str:
        if client is None:
            return SUGGESTION_FALLBACK
        context = "\n".join([
            "Current screenshot analysis:",
            f"- summary: {analysis.summary}",
            f"- detail: {analysis.detail}",
            f"- issue_type: {analysis.issue_type or 'unclassified'}",
            f"- issue_summary: {analysis.issue_text}",
            f"- confidence: {analysis.confidence:.2f}",
            "",
            "Recent activity:",
            recent_context or "(none)",
        ])
        try:
            return client.chat(context, SUGGESTION_QUESTION).strip() or SUGGESTION_FALLBACK
        except Exception as e:
            logger.warning(f"Failed to generate suggestion: {e}")
            return SUGGESTION_FALLBACK

    def publish(self, alert: AssistantAlert, threshold: Optional[float] = None) -> None:
        """Snapshot ``alert`` to the log directory and publish it."""
        lines = [
            f"time: {alert.timestamp}",
            f"issue_type: {alert.issue_type}",
            f"message: {alert.message}",
        ]
        if alert.suggestion:
            lines.append(f"suggestion: {alert.suggestion}")
        lines.append(f"confidence: {alert.confidence:.2f}")
        if threshold is not None:
            lines.append(f"threshold: {threshold:.2f}")
        self._snapshot("assistant-alert", "\n".join(lines))

        logger.info(f"Alert: {alert.issue_type or 'issue'}: {alert.message}")
        try:
            self.channel.publish(alert)
        except Exception as e:
            logger.error(f"Failed to publish alert: {e}")

    def publish_model_error(self, error, source: str, cooldown_seconds: int = 60,
                            now: Optional[datetime] = None) -> Optional[ModelErrorAlert]:
        """Classify a model failure and publish it, once per cooldown per kind."""
        try:
            now = now or datetime.now()
            error_type, message, suggestion = classify_model_error(error)
            if not self._outside_cooldown(f"model:{error_type}:{message}", now, cooldown_seconds):
                return None
            alert = ModelErrorAlert(
                timestamp=format_timestamp(now),
                error_type=error_type,
                message=message,
                suggestion=suggestion,
                detail=str(error),
                source=source,
            )
            self._snapshot("model-error", f"time: {alert.timestamp}\nsource: {source}\n"
                                          f"error_type: {error_type}\ndetail: {alert.detail}")
            self.channel.publish(alert)
            return alert
        except Exception as e:
            logger.error(f"Failed to publish model error alert: {e}")
            return None

    def _snapshot(self, prefix: str, content: str) -> None:
        if self.storage is None:
            return
        try:
            self.storage.write_log_snapshot(prefix, content)
        except Exception as e:
            logger.warning(f"Failed to write {prefix} log: {e}")
