"""screenlog daemon and application facade.

ScreenAssistant wires the pieces together (configuration and profiles,
storage, the capture scheduler, the query engine and alerts) and exposes the
operations a UI or command line needs. The module can also be run directly
to capture in the foreground until interrupted.

Example:
    # Programmatic use
    >>> from screenlog.daemon import ScreenAssistant
    >>> assistant = ScreenAssistant()
    >>> assistant.start_capture()
    >>> assistant.ask("what was I doing in the last 10 minutes?")

    # Or via command line
    $ python -m screenlog.daemon --verbose
"""

import argparse
import logging
import queue
import signal
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Union

from .alerts import AlertChannel, AlertPipeline, AssistantAlert, ModelErrorAlert
from .config import Config, ConfigManager, ModelConfig, ProfileStore, normalize_config
from .scheduler import CaptureScheduler
from .search import QueryEngine, SearchResult
from .storage import ActivityStorage, SummaryRecord
from .vision import ConnectionReport, ModelClient, create_client

logger = logging.getLogger(__name__)


class ScreenAssistant:
    """Facade over capture, storage, search, profiles and alerts.

    Attributes:
        config_manager (ConfigManager): Persisted active configuration
        profiles (ProfileStore): Named configuration snapshots
        storage (ActivityStorage): Record and screenshot storage
        scheduler (CaptureScheduler): Background capture loop
        query_engine (QueryEngine): Search and question answering
        channel (AlertChannel): Alert fan-out for subscribers
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        sampler: Optional[Callable] = None,
        client_factory: Callable[..., ModelClient] = create_client,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the assistant from the persisted configuration.

        Args:
            config_manager: Configuration source (default: ~/.config/screenlog/config.yaml)
            sampler: Screen sampler passed to the scheduler
            client_factory: Called as (model_config, exchange_log) to build model clients
            clock: Returns the current local time
        """
        self.config_manager = config_manager or ConfigManager()
        self.profiles = ProfileStore(self.config_manager.profiles_dir)
        self._client_factory = client_factory
        self._clock = clock

        config = self.config_manager.config
        self.storage = ActivityStorage(config.storage.data_dir, clock=clock)
        self.channel = AlertChannel()
        self.alerts = AlertPipeline(self.channel, self.storage)
        self.scheduler = CaptureScheduler(self.storage, self.alerts, sampler=sampler,
                                          client_factory=client_factory, clock=clock)
        self.scheduler.apply_config(config)
        self.query_engine = QueryEngine(self.storage)

    # ============ Capture ============

    def start_capture(self) -> bool:
        return self.scheduler.start(self.config_manager.config)

    def autostart(self) -> bool:
        """Start capturing if ``capture.enabled`` is set; returns whether it started."""
        if not self.config_manager.config.capture.enabled:
            logger.info("Capture is disabled in the configuration, not starting")
            return False
        return self.start_capture()

    def stop_capture(self) -> None:
        self.scheduler.stop()

    def status(self) -> dict:
        """Running state, counters and the active provider and profile."""
        config = self.config_manager.config
        last = self.scheduler.last_record
        return {
            **self.scheduler.stats(),
            "provider": config.model.provider,
            "model": (config.model.ollama.model if config.model.provider == "ollama"
                      else config.model.api.model),
            "active_profile": self.get_active_profile(),
            "last_record_at": last.timestamp if last else None,
            "data_dir": str(self.storage.data_dir),
        }

    def get_current_summary(self) -> Optional[SummaryRecord]:
        """Latest record from this session, else the latest stored one."""
        return self.scheduler.last_record or self.storage.get_latest_summary()

    def get_history(self, day: Union[str, date, None] = None) -> List[SummaryRecord]:
        """Raw records of ``day`` (default: today).

        Raises:
            StorageError: If the day's partition cannot be read.
        """
        return self.storage.get_summaries(day or self._clock().date())

    # ============ Query ============

    def search(self, query: str) -> SearchResult:
        return self.query_engine.search(query, self._clock())

    def _client(self, model_config: ModelConfig) -> ModelClient:
        exchange_log = self.storage.write_log_snapshot if model_config.log_exchanges else None
        return self._client_factory(model_config, exchange_log)

    def ask(self, question: str) -> str:
        """Answer a question about past activity with the configured model.

        Raises:
            ModelError: If the model call fails.
        """
        config = self.config_manager.config
        return self.query_engine.ask(question, self._client(config.model),
                                     max_chars=config.storage.max_context_chars,
                                     include_detail=True, now=self._clock())

    def run_connectivity_test(self, model_config: Optional[ModelConfig] = None) -> ConnectionReport:
        """Check the model connection, optionally with unsaved settings.

        Raises:
            ModelError: With the failure exactly as a capture tick would see it.
        """
        return self._client(model_config or self.config_manager.config.model).test_connection()

    # ============ Configuration and profiles ============

    def get_config(self) -> Config:
        return self.config_manager.config

    def set_config(self, config: Union[Config, Mapping]) -> Config:
        """Persist and activate ``config``; the capture loop picks it up next tick."""
        if not isinstance(config, Config):
            config = normalize_config(config)
        previous = self.config_manager.config
        config = self.config_manager.replace(config)

        if config.storage.data_dir != previous.storage.data_dir:
            self._rebind_storage(ActivityStorage(config.storage.data_dir, clock=self._clock))
        self.scheduler.apply_config(config)
        return config

    def _rebind_storage(self, storage: ActivityStorage) -> None:
        logger.info(f"Data directory changed to {storage.data_dir}")
        self.storage = storage
        self.scheduler.storage = storage
        self.alerts.storage = storage
        self.query_engine.storage = storage

    def list_profiles(self) -> List[str]:
        return self.profiles.list_profiles()

    def load_profile(self, name: str) -> Config:
        """Activate a stored profile.

        Raises:
            ProfileError: If the name is invalid or the profile does not exist.
            ConfigError: If the profile cannot be parsed.
        """
        config = self.set_config(self.profiles.load_profile(name))
        logger.info(f"Loaded profile {name}")
        return config

    def save_profile(self, name: str, config: Optional[Config] = None) -> str:
        """Store ``config`` (default: the active one) as a named profile."""
        return self.profiles.save_profile(name, config or self.config_manager.config)

    def delete_profile(self, name: str) -> bool:
        return self.profiles.delete_profile(name)

    def get_active_profile(self) -> Optional[str]:
        return self.profiles.find_active(self.config_manager.config)

    # ============ Alerts ============

    def subscribe_alerts(self) -> queue.Queue:
        return self.channel.subscribe()

    def unsubscribe_alerts(self, q: queue.Queue) -> None:
        self.channel.unsubscribe(q)


def _log_alert(event) -> None:
    if isinstance(event, AssistantAlert):
        logger.warning(f"[{event.issue_type or 'issue'}] {event.message}")
        if event.suggestion:
            logger.warning(f"Suggestion: {event.suggestion}")
    elif isinstance(event, ModelErrorAlert):
        logger.error(f"Model error ({event.error_type}): {event.message}. {event.suggestion}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Screen activity capture daemon")
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.config/screenlog/config.yaml)")
    parser.add_argument("--profile", help="Activate a named profile before starting")
    parser.add_argument("--test-connection", action="store_true",
                        help="Check the model connection and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    assistant = ScreenAssistant(ConfigManager(args.config) if args.config else None)
    if args.profile:
        assistant.load_profile(args.profile)

    if args.test_connection:
        report = assistant.run_connectivity_test()
        print(f"OK: {report.provider} answered in {report.latency_ms}ms: {report.reply}")
        return 0

    if not assistant.get_config().capture.enabled:
        logger.info("Capture is disabled (capture.enabled: false), nothing to run")
        return 0

    stop_event = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    alerts = assistant.subscribe_alerts()
    assistant.autostart()
    try:
        while not stop_event.is_set():
            try:
                _log_alert(alerts.get(timeout=1))
            except queue.Empty:
                continue
    finally:
        assistant.stop_capture()
        assistant.unsubscribe_alerts(alerts)
    logger.info("screenlog daemon stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
