"""Capture scheduler: the periodic sample, analyze and record loop.

One background thread runs ticks every ``capture.interval_ms``. A tick works
on the config snapshot it took when it began:

1. Sample the screen
2. Fingerprint the sample and ask the ChangeDetector whether to skip it
3. Send it to the model with the recent-activity context
4. Parse the reply, save the screenshot and append a SummaryRecord
5. Move the change baseline to this frame and hand the result to alerts

At most one tick is in flight. Ticks that come due while one is still
running are dropped and counted, never queued. ``stop()`` lets the running
tick finish and record before it returns.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .alerts import AlertChannel, AlertPipeline
from .analysis import build_analysis_prompt, build_record, build_recent_context, parse_analysis
from .capture import CaptureError, ChangeDetector, ScreenCapture, average_hash, format_hash, image_to_base64
from .config import Config
from .storage import ActivityStorage, RetentionPolicy, StorageError, SummaryRecord, format_timestamp
from .vision import ModelClient, ModelError, create_client

logger = logging.getLogger(__name__)

RECENT_CONTEXT_MINUTES = 3

RECORDED = "recorded"
SKIPPED = "skipped"
FAILED = "failed"


class CaptureScheduler:
    """Runs the capture pipeline on a background thread.

    Attributes:
        storage: Where records, screenshots and log snapshots go
        alerts: Alert pipeline fed after each record
        detector: Change detector holding the last analyzed fingerprint

    Example:
        >>> scheduler = CaptureScheduler(ActivityStorage(), AlertPipeline(AlertChannel()))
        >>> scheduler.start(config)
        >>> scheduler.stop()
        >>> scheduler.record_count
        3
    """

    def __init__(
        self,
        storage: ActivityStorage,
        alerts: Optional[AlertPipeline] = None,
        sampler: Optional[Callable] = None,
        client_factory: Callable[..., ModelClient] = create_client,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the scheduler.

        Args:
            storage: ActivityStorage for records and screenshots.
            alerts: AlertPipeline; a private one is created when omitted.
            sampler: Callable returning a PIL image (default: ScreenCapture()).
            client_factory: Called as (model_config, exchange_log) to build a client.
            clock: Returns the current local time.
        """
        self.storage = storage
        self.alerts = alerts or AlertPipeline(AlertChannel(), storage)
        self.sampler = sampler or ScreenCapture()
        self.client_factory = client_factory
        self._clock = clock
        self.detector = ChangeDetector()

        self._lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._config: Config = Config()
        self._config_version = 0
        self._client: Optional[ModelClient] = None
        self._client_key = None

        self._record_count = 0
        self._skip_count = 0
        self._error_count = 0
        self._dropped_ticks = 0
        self._last_record: Optional[SummaryRecord] = None

    # ============ Lifecycle ============

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self, config: Optional[Config] = None) -> bool:
        """Start the capture thread; returns False if it was already running."""
        with self._lifecycle_lock:
            if self.is_running:
                logger.warning("Capture already running")
                return False
            if config is not None:
                self.apply_config(config)

            self.detector.reset()
            self.alerts.reset()
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="screenlog-capture", daemon=True)
            self._thread.start()
        logger.info(f"Capture started (interval {self.config.capture.interval_ms}ms)")
        return True

    def stop(self) -> None:
        """Stop capturing; blocks until the in-flight tick has finished and recorded."""
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join()
            self._thread = None
        logger.info(f"Capture stopped ({self.record_count} recorded, {self.skip_count} skipped)")

    # ============ Configuration ============

    def apply_config(self, config: Config) -> int:
        """Install a new config for subsequent ticks; returns its version."""
        with self._lock:
            self._config = config
            self._config_version += 1
            version = self._config_version
        logger.debug(f"Config version {version} applied")
        return version

    @property
    def config(self) -> Config:
        with self._lock:
            return self._config

    @property
    def config_version(self) -> int:
        with self._lock:
            return self._config_version

    # ============ Counters ============

    @property
    def record_count(self) -> int:
        with self._lock:
            return self._record_count

    @property
    def skip_count(self) -> int:
        with self._lock:
            return self._skip_count

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._error_count

    @property
    def dropped_ticks(self) -> int:
        with self._lock:
            return self._dropped_ticks

    @property
    def last_record(self) -> Optional[SummaryRecord]:
        with self._lock:
            return self._last_record

    def stats(self) -> dict:
        with self._lock:
            return {
                "running": self._thread is not None and self._thread.is_alive(),
                "record_count": self._record_count,
                "skip_count": self._skip_count,
                "error_count": self._error_count,
                "dropped_ticks": self._dropped_ticks,
                "config_version": self._config_version,
            }

    def _count_error(self) -> None:
        with self._lock:
            self._error_count += 1

    # ============ Loop ============

    def _run_loop(self) -> None:
        next_due = time.monotonic()
        while not self._stop_event.is_set():
            try:
                self.run_tick(self.config)
            except Exception as e:
                logger.error(f"Error in capture loop: {e}", exc_info=True)
                self._count_error()

            interval = self.config.capture.interval_ms / 1000.0
            next_due += interval
            now = time.monotonic()
            if now > next_due:
                missed = int((now - next_due) // interval) + 1
                with self._lock:
                    self._dropped_ticks += missed
                next_due += missed * interval
                logger.debug(f"Dropped {missed} tick(s) while the pipeline was busy")
            self._stop_event.wait(max(0.0, next_due - time.monotonic()))

    def _client_for(self, config: Config) -> ModelClient:
        key = (config.model, config.storage.data_dir)
        if self._client is None or self._client_key != key:
            exchange_log = self.storage.write_log_snapshot if config.model.log_exchanges else None
            self._client = self.client_factory(config.model, exchange_log)
            self._client_key = key
            logger.info(f"Using model {self._client.identity}")
        return self._client

    def run_tick(self, config: Config) -> str:
        """Run one pipeline pass with ``config``.

        Returns:
            "recorded", "skipped" or "failed".
        """
        capture_config = config.capture
        now = self._clock()

        try:
            image = self.sampler()
        except CaptureError as e:
            logger.warning(f"Screen capture failed: {e}")
            self._count_error()
            return FAILED

        fingerprint = average_hash(image)
        decision = self.detector.check(fingerprint, capture_config.skip_unchanged,
                                       capture_config.change_threshold)
        if decision.skip:
            logger.debug(f"Skipping unchanged frame {format_hash(fingerprint)} "
                         f"(similarity {decision.similarity:.3f})")
            with self._lock:
                self._skip_count += 1
            return SKIPPED

        try:
            recent = self.storage.get_recent_summaries(capture_config.recent_summary_limit,
                                                       RECENT_CONTEXT_MINUTES, now)
        except StorageError as e:
            logger.warning(f"Could not load recent context: {e}")
            recent = []
        recent_context = build_recent_context(recent, capture_config.recent_detail_limit)

        client = self._client_for(config)
        try:
            reply = client.analyze(image_to_base64(image, capture_config.compress_quality),
                                   build_analysis_prompt(recent_context))
        except ModelError as e:
            logger.error(f"Analysis failed: {e}")
            self.alerts.publish_model_error(e, "capture", capture_config.alert_cooldown_seconds, now)
            self._count_error()
            return FAILED

        analysis = parse_analysis(reply)

        detail_ref = ""
        if capture_config.save_screenshots:
            try:
                detail_ref = self.storage.save_screenshot(image, now, capture_config.compress_quality)
            except CaptureError as e:
                logger.warning(f"{e}")

        record = build_record(analysis, format_timestamp(now), client.identity, detail_ref)
        record, alert = self.alerts.inspect(record, analysis, capture_config, client,
                                            recent_context, now)

        retention = RetentionPolicy(retention_days=config.storage.retention_days,
                                    max_screenshots=config.storage.max_screenshots)
        try:
            self.storage.save_summary(record, retention)
        except StorageError as e:
            logger.error(f"Failed to save record: {e}")
            self._count_error()
            return FAILED

        self.detector.commit(fingerprint)
        with self._lock:
            self._record_count += 1
            self._last_record = record
        logger.info(f"Recorded [{record.app}] {record.summary}")

        if alert is not None:
            self.alerts.publish(alert, capture_config.alert_confidence_threshold)
        return RECORDED
