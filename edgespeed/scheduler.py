"""Background scheduler for periodic client runs."""

from __future__ import annotations

import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import AppConfig
from .exporter import CSVExporter
from .measurements.manager import MeasurementManager

LOGGER = logging.getLogger(__name__)


class SchedulerService:
    def __init__(
        self,
        config: AppConfig,
        measurement_manager: MeasurementManager,
        exporter: CSVExporter,
    ) -> None:
        self.config = config
        self.measurements = measurement_manager
        self.exporter = exporter
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.started = False

    def start(self) -> None:
        if self.started:
            LOGGER.warning("Scheduler already started, ignoring duplicate start request")
            return

        if not self.config.scheduler.enabled:
            LOGGER.info("Scheduler disabled in configuration, periodic runs will not start")
            return

        interval = self.config.scheduler.interval_minutes
        try:
            self.scheduler.add_job(
                self._run_cycle,
                trigger=IntervalTrigger(minutes=interval),
                id="scheduled-speedtest",
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.start()
            self.started = True
            LOGGER.info(
                "Scheduler started with interval %s minutes against %s",
                interval,
                self.config.client.target_url,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Failed to start scheduler: %s", exc, exc_info=True)
            LOGGER.error("  Scheduled runs will not happen; manual runs still work")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False

    def _run_cycle(self) -> None:
        LOGGER.info("Starting scheduled speedtest at %s", datetime.utcnow().isoformat())
        try:
            self.measurements.run_speedtest()
            self.exporter.write_snapshot()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Scheduled speedtest failed: %s", exc)
