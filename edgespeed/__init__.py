"""Application bootstrap helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .db import Measurement, init_db
from .exporter import CSVExporter
from .logging_setup import configure_logging
from .measurements.manager import MeasurementManager
from .measurements.models import TestSession
from .scheduler import SchedulerService
from .web.app import create_web_app

LOGGER = logging.getLogger(__name__)


class ApplicationContext:
    """Holds shared singletons for the server and the command-line client."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.log_path = configure_logging(config)
        self.Session = init_db(config.paths.data_dir)
        self.measurements = MeasurementManager(config, self.Session)
        self.exporter = CSVExporter(config, self.Session)
        self.scheduler = SchedulerService(config, self.measurements, self.exporter)
        self.web_app = create_web_app(
            config=config,
            measurement_manager=self.measurements,
            exporter=self.exporter,
        )

    def record(self, session: TestSession) -> Measurement:
        """Store a finished client run and refresh the CSV snapshot."""
        measurement = self.measurements.persist(session)
        self.exporter.write_snapshot()
        return measurement

    def serve(self, host: Optional[str] = None, port: Optional[int] = None, debug: bool = False) -> None:
        host = host or self.config.web.host
        port = port or self.config.web.port
        self.scheduler.start()
        LOGGER.info("Serving speedtest endpoints on %s:%d", host, port)
        try:
            self.web_app.run(host=host, port=port, debug=debug, threaded=True)
        finally:
            self.scheduler.shutdown()


def bootstrap(config_path: Optional[str] = None) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config)
