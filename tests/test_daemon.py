"""Tests for the ScreenAssistant facade."""

import pytest

from conftest import make_image
from screenlog.config import (
    CaptureConfig, Config, ConfigManager, ModelConfig, OllamaConfig, ProfileError, StorageConfig,
)
from screenlog.daemon import ScreenAssistant, main
from screenlog.vision import ConnectionReport


class FakeClient:

    identity = "fake/vision"

    def __init__(self, model_config):
        self.model_config = model_config
        self.questions = []

    def analyze(self, image_b64, prompt):
        return '{"summary": "Writing tests in VS Code", "app": "VS Code", "confidence": 0.8}'

    def chat(self, context, question):
        self.questions.append((context, question))
        return "You were writing tests."

    def test_connection(self):
        return ConnectionReport(self.identity, "vision", 12, "OK")


@pytest.fixture
def manager(tmp_path):
    manager = ConfigManager(tmp_path / "config" / "config.yaml")
    manager.replace(Config(storage=StorageConfig(data_dir=str(tmp_path / "data"))))
    return manager


@pytest.fixture
def clients():
    return []


@pytest.fixture
def assistant(manager, clock, clients):
    def factory(model_config, exchange_log):
        client = FakeClient(model_config)
        clients.append(client)
        return client

    return ScreenAssistant(manager, sampler=lambda: make_image("left"),
                           client_factory=factory, clock=clock)


class TestCaptureFacade:

    def test_status_before_start(self, assistant, tmp_path):
        status = assistant.status()
        assert status["running"] is False
        assert status["record_count"] == 0
        assert status["provider"] == "api"
        assert status["model"] == "gpt-4o-mini"
        assert status["last_record_at"] is None
        assert status["data_dir"] == str(tmp_path / "data")

    def test_history_and_current_summary(self, assistant, clock):
        assistant.scheduler.run_tick(assistant.get_config())

        history = assistant.get_history()
        assert [r.summary for r in history] == ["Writing tests in VS Code"]
        assert assistant.get_current_summary() == history[0]
        assert assistant.status()["last_record_at"] == "2026-10-17T09:00:00"

    def test_current_summary_falls_back_to_storage(self, manager, assistant, clock):
        assistant.scheduler.run_tick(assistant.get_config())
        fresh = ScreenAssistant(manager, client_factory=lambda mc, log: FakeClient(mc), clock=clock)
        assert fresh.get_current_summary().summary == "Writing tests in VS Code"

    def test_ask_and_connectivity(self, assistant, clients):
        assistant.scheduler.run_tick(assistant.get_config())

        assert assistant.ask("what did I do today?") == "You were writing tests."
        context, _ = clients[-1].questions[0]
        assert "Writing tests in VS Code" in context

        report = assistant.run_connectivity_test(ModelConfig(provider="ollama"))
        assert report.reply == "OK"
        assert clients[-1].model_config.provider == "ollama"


class TestConfiguration:

    def test_set_config_persists_and_applies(self, assistant, manager):
        version = assistant.scheduler.config_version
        updated = Config(capture=CaptureConfig(interval_ms=5000), storage=manager.config.storage)

        assistant.set_config(updated)

        assert assistant.scheduler.config_version == version + 1
        assert assistant.scheduler.config.capture.interval_ms == 5000
        assert ConfigManager(manager.path).config == assistant.get_config()

    def test_set_config_from_mapping_is_normalized(self, assistant):
        config = assistant.set_config({"capture": {"interval_ms": "50", "change_threshold": "0"},
                                       "storage": {"data_dir": assistant.get_config().storage.data_dir}})
        assert config.capture.interval_ms == 200
        assert config.capture.change_threshold == 0.01

    def test_data_dir_change_rebinds_storage(self, assistant, tmp_path):
        new_dir = tmp_path / "elsewhere"
        assistant.set_config(Config(storage=StorageConfig(data_dir=str(new_dir))))

        assert assistant.storage.data_dir == new_dir
        assert assistant.scheduler.storage is assistant.storage
        assert assistant.query_engine.storage is assistant.storage
        assistant.scheduler.run_tick(assistant.get_config())
        assert list((new_dir / "summaries").glob("*.json"))


class TestProfiles:

    def test_profile_lifecycle(self, assistant, manager):
        assert assistant.list_profiles() == []
        assert assistant.save_profile("work") == "work"
        assert assistant.get_active_profile() == "work"

        local = Config(model=ModelConfig(provider="ollama", ollama=OllamaConfig(model="llava:13b")),
                       storage=manager.config.storage)
        assistant.save_profile("local", local)
        assert assistant.list_profiles() == ["local", "work"]

        assistant.load_profile("local")
        assert assistant.get_config().model.provider == "ollama"
        assert assistant.get_active_profile() == "local"
        assert assistant.status()["model"] == "llava:13b"

        assert assistant.delete_profile("local")
        assert not assistant.delete_profile("local")
        assert assistant.get_active_profile() is None

    def test_missing_profile(self, assistant):
        with pytest.raises(ProfileError):
            assistant.load_profile("nope")

    def test_invalid_name(self, assistant):
        with pytest.raises(ProfileError):
            assistant.save_profile("../escape")


class TestAlertSubscription:

    def test_subscribe_and_unsubscribe(self, assistant):
        q = assistant.subscribe_alerts()
        assert assistant.channel.subscriber_count == 1
        assistant.unsubscribe_alerts(q)
        assert assistant.channel.subscriber_count == 0


class TestAutostart:

    def test_disabled_capture_does_not_start(self, assistant, manager):
        assistant.set_config(Config(capture=CaptureConfig(enabled=False), storage=manager.config.storage))
        assert assistant.autostart() is False
        assert not assistant.scheduler.is_running

    def test_enabled_capture_starts(self, assistant):
        try:
            assert assistant.autostart() is True
            assert assistant.scheduler.is_running
        finally:
            assistant.stop_capture()

    def test_main_exits_when_capture_disabled(self, tmp_path):
        path = tmp_path / "config.yaml"
        ConfigManager(path).replace(Config(capture=CaptureConfig(enabled=False),
                                           storage=StorageConfig(data_dir=str(tmp_path / "data"))))
        assert main(["--config", str(path)]) == 0
        assert list((tmp_path / "data" / "summaries").iterdir()) == []
