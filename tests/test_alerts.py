"""Tests for alert decisions, publishing and model error classification."""

import queue
from datetime import datetime, timedelta

import pytest

from conftest import make_record
from screenlog.alerts import (
    SUGGESTION_FALLBACK, AlertChannel, AlertPipeline, AssistantAlert, ModelErrorAlert,
    build_issue_key, classify_model_error, is_self_view, normalize_issue_text,
)
from screenlog.analysis import AnalysisResult
from screenlog.config import CaptureConfig
from screenlog.vision import ModelPermanentError, ModelTransientError

NOW = datetime(2026, 10, 17, 9, 0, 0)
CAPTURE = CaptureConfig(alert_confidence_threshold=0.6, alert_cooldown_seconds=60)


class FakeChatClient:

    def __init__(self, answer="Run cargo clean.", error=None):
        self.answer = answer
        self.error = error
        self.calls = 0

    def chat(self, context, question):
        self.calls += 1
        if self.error:
            raise self.error
        return self.answer


def issue(issue_type="compile error", message="E0308 mismatched types", confidence=0.8,
          suggestion="", app="Terminal", summary="Build failed in terminal"):
    return AnalysisResult(summary=summary, app=app, has_issue=True, issue_type=issue_type,
                          issue_message=message, suggestion=suggestion, confidence=confidence,
                          structured=True)


@pytest.fixture
def channel():
    return AlertChannel()


@pytest.fixture
def pipeline(channel, storage):
    return AlertPipeline(channel, storage)


def inspect(pipeline, analysis, now=NOW, client=None, capture=CAPTURE):
    record = make_record(now, analysis.summary, action="issue" if analysis.has_issue else "active")
    return pipeline.inspect(record, analysis, capture, client=client, now=now)


class TestAlertChannel:

    def test_fan_out(self, channel):
        first, second = channel.subscribe(), channel.subscribe()
        assert channel.publish("event") == 2
        assert first.get_nowait() == "event"
        assert second.get_nowait() == "event"

    def test_unsubscribe(self, channel):
        q = channel.subscribe()
        channel.unsubscribe(q)
        channel.unsubscribe(q)
        assert channel.publish("event") == 0
        assert q.empty()

    def test_full_queue_drops_without_blocking(self):
        channel = AlertChannel(maxsize=1)
        q = channel.subscribe()
        channel.publish(1)
        assert channel.publish(2) == 0
        assert q.get_nowait() == 1
        with pytest.raises(queue.Empty):
            q.get_nowait()


class TestInspect:

    def test_confident_issue_alerts(self, pipeline):
        record, alert = inspect(pipeline, issue(suggestion="Fix the type."))
        assert isinstance(alert, AssistantAlert)
        assert alert.issue_type == "compile error"
        assert alert.message == "E0308 mismatched types"
        assert alert.suggestion == "Fix the type."
        assert pipeline.last_issue_key == "compile error"

    def test_low_confidence_no_alert(self, pipeline):
        _, alert = inspect(pipeline, issue(confidence=0.3))
        assert alert is None
        assert pipeline.last_issue_key is None

    def test_no_issue_no_alert(self, pipeline):
        _, alert = inspect(pipeline, AnalysisResult(summary="Reading", confidence=0.9))
        assert alert is None

    def test_same_issue_on_next_tick_is_not_repeated(self, pipeline):
        assert inspect(pipeline, issue())[1] is not None
        assert inspect(pipeline, issue(), now=NOW + timedelta(minutes=5))[1] is None

    def test_cooldown_applies_after_issue_goes_away(self, pipeline):
        assert inspect(pipeline, issue())[1] is not None
        inspect(pipeline, AnalysisResult(summary="Reading"), now=NOW + timedelta(seconds=10))
        # same key again within 60s of the first alert
        assert inspect(pipeline, issue(), now=NOW + timedelta(seconds=20))[1] is None
        inspect(pipeline, AnalysisResult(summary="Reading"), now=NOW + timedelta(seconds=30))
        assert inspect(pipeline, issue(), now=NOW + timedelta(seconds=61))[1] is not None

    def test_different_issue_alerts_immediately(self, pipeline):
        assert inspect(pipeline, issue())[1] is not None
        second = inspect(pipeline, issue(issue_type="network error"), now=NOW + timedelta(seconds=1))[1]
        assert second.issue_type == "network error"

    def test_own_window_is_suppressed(self, pipeline):
        analysis = issue(app="screenlog", summary="Viewing alert history in screenlog")
        assert inspect(pipeline, analysis)[1] is None

    def test_missing_suggestion_is_requested(self, pipeline):
        client = FakeChatClient()
        record, alert = inspect(pipeline, issue(), client=client)
        assert client.calls == 1
        assert alert.suggestion == "Run cargo clean."
        assert record.suggestion == "Run cargo clean."

    def test_suggestion_failure_uses_fallback(self, pipeline):
        client = FakeChatClient(error=ModelTransientError("timed out"))
        record, alert = inspect(pipeline, issue(), client=client)
        assert alert.suggestion == SUGGESTION_FALLBACK
        assert record.suggestion == SUGGESTION_FALLBACK

    def test_internal_failure_is_swallowed(self, pipeline):
        record = make_record(NOW, "x")
        returned, alert = pipeline.inspect(record, None, CAPTURE, now=NOW)
        assert returned is record
        assert alert is None


class TestPublish:

    def test_publish_reaches_subscriber_and_log(self, pipeline, channel, storage):
        q = channel.subscribe()
        _, alert = inspect(pipeline, issue(suggestion="Fix it."))
        pipeline.publish(alert, threshold=0.6)

        assert q.get_nowait() == alert
        logs = list(storage.logs_dir.glob("*-assistant-alert.log"))
        assert len(logs) == 1
        content = logs[0].read_text()
        assert "issue_type: compile error" in content
        assert "threshold: 0.60" in content

    def test_model_error_published_once_per_cooldown(self, pipeline, channel):
        q = channel.subscribe()
        error = ModelPermanentError("HTTP 401 from https://api.example.com: bad key", status_code=401)

        first = pipeline.publish_model_error(error, "capture", 60, now=NOW)
        assert isinstance(first, ModelErrorAlert)
        assert first.error_type == "unauthorized"
        assert first.detail == str(error)
        assert pipeline.publish_model_error(error, "capture", 60, now=NOW + timedelta(seconds=30)) is None
        assert pipeline.publish_model_error(error, "capture", 60, now=NOW + timedelta(seconds=61)) is not None
        assert q.qsize() == 2

    def test_alert_to_dict(self):
        alert = AssistantAlert("2026-10-17T09:00:00", "x", "y", "z")
        assert alert.to_dict()["kind"] == "assistant-alert"


class TestClassification:

    @pytest.mark.parametrize("status,expected", [
        (401, "unauthorized"), (403, "unauthorized"), (402, "insufficient_quota"),
        (429, "rate_limit"), (408, "timeout"), (400, "invalid_request"), (404, "invalid_request"),
        (500, "server_error"), (503, "server_error"), (599, "server_error"),
    ])
    def test_by_status(self, status, expected):
        assert classify_model_error(ModelPermanentError("boom", status_code=status))[0] == expected

    @pytest.mark.parametrize("text,expected", [
        ("Invalid API key provided", "unauthorized"),
        ("insufficient_quota: you exceeded your current quota", "insufficient_quota"),
        ("Rate limit reached", "rate_limit"),
        ("Request to http://x timed out after 60s", "timeout"),
        ("Cannot connect to http://localhost:11434: Connection refused", "network"),
        ("Model not found: llava", "invalid_request"),
        ("HTTP 502 from http://x: bad gateway", "server_error"),
        ("something odd", "unknown"),
    ])
    def test_by_text(self, text, expected):
        assert classify_model_error(text)[0] == expected


class TestIssueKeys:

    def test_type_wins(self):
        assert build_issue_key(issue(issue_type=" Compile Error ")) == "compile error"

    def test_message_normalized(self):
        assert build_issue_key(issue(issue_type="", message="Line 42:  failed")) == "line : failed"

    def test_normalize_issue_text(self):
        assert normalize_issue_text("Retry 3 of 5\tfailed") == "retry of failed"

    def test_self_view_requires_marker(self):
        assert is_self_view(issue(app="screenlog", summary="Settings page"))
        assert not is_self_view(issue(app="screenlog", summary="Crash dialog"))
        assert is_self_view(issue(app="Unknown", summary="screenlog chat window"))
        assert not is_self_view(issue(app="Terminal", summary="alert history"))
