"""Run orchestration and persistence layer."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import replace
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import sessionmaker

from ..config import AppConfig
from ..db import Measurement, get_session
from .controller import Listener, SpeedtestController
from .models import TestSession

LOGGER = logging.getLogger(__name__)


class MeasurementManager:
    def __init__(self, config: AppConfig, session_factory: sessionmaker):
        self.config = config
        self.Session = session_factory
        self._lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def build_controller(
        self,
        target_url: Optional[str] = None,
        threads: Optional[int] = None,
        duration_ms: Optional[int] = None,
        listener: Optional[Listener] = None,
    ) -> SpeedtestController:
        settings = self.config.client
        if threads is not None or duration_ms is not None:
            settings = replace(
                settings,
                threads=threads if threads is not None else settings.threads,
                duration_ms=duration_ms if duration_ms is not None else settings.duration_ms,
            )
            settings.validate()
        return SpeedtestController(target_url or settings.target_url, settings, listener=listener)

    def run_speedtest(self, controller: Optional[SpeedtestController] = None) -> Optional[Measurement]:
        """Run one client test to completion on a private event loop and store it."""
        if not self._lock.acquire(blocking=False):
            LOGGER.warning("Speedtest already in progress, skipping request")
            return None
        try:
            controller = controller or self.build_controller()
            session = asyncio.run(controller.start())
            if session is None:
                return None
            return self.persist(session)
        finally:
            self._lock.release()

    def persist(self, session: TestSession) -> Measurement:
        with get_session(self.Session) as db:
            record = Measurement(
                timestamp=session.started_at,
                target=session.target,
                status=session.status,
                latency_ms=session.latency_ms,
                download_mbps=session.download_mbps,
                upload_mbps=session.upload_mbps,
                download_bytes=session.download_bytes,
                upload_bytes=session.upload_bytes,
                threads=session.threads,
                duration_seconds=session.duration_seconds,
                error=session.error,
                raw_json=json.dumps(session.to_dict()),
            )
            db.add(record)
            db.flush()
            LOGGER.info(
                "Stored %s run against %s (down %.2f Mbps / up %.2f Mbps)",
                record.status,
                record.target,
                record.download_mbps or 0,
                record.upload_mbps or 0,
            )
            return record

    def get_measurements(self, limit: Optional[int] = None, status: Optional[str] = None) -> List[Measurement]:
        with get_session(self.Session) as db:
            query = db.query(Measurement).order_by(desc(Measurement.timestamp), desc(Measurement.id))
            if status:
                query = query.filter(Measurement.status == status)
            if limit:
                query = query.limit(limit)
            return query.all()

    def latest(self) -> Optional[Measurement]:
        rows = self.get_measurements(limit=1)
        return rows[0] if rows else None

    def to_dict(self, measurement: Measurement) -> dict:
        return {
            "id": measurement.id,
            "timestamp": measurement.timestamp.isoformat(),
            "target": measurement.target,
            "status": measurement.status,
            "latency_ms": measurement.latency_ms,
            "download_mbps": measurement.download_mbps,
            "upload_mbps": measurement.upload_mbps,
            "download_bytes": measurement.download_bytes,
            "upload_bytes": measurement.upload_bytes,
            "threads": measurement.threads,
            "duration_seconds": measurement.duration_seconds,
            "error": measurement.error,
        }
