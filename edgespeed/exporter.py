"""CSV export helpers for stored speedtest runs."""

from __future__ import annotations

import csv
import io
from pathlib import Path

from .config import AppConfig
from .db import Measurement, get_session


class CSVExporter:
    def __init__(self, config: AppConfig, session_factory):
        self.config = config
        self.Session = session_factory

    def build_csv(self) -> io.StringIO:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self._header())

        for row in self._iter_rows():
            writer.writerow(row)

        buffer.seek(0)
        return buffer

    def _header(self) -> list:
        return [
            "timestamp",
            "target",
            "status",
            "latency_ms",
            "download_mbps",
            "upload_mbps",
            "download_bytes",
            "upload_bytes",
            "threads",
            "duration_seconds",
            "error",
        ]

    def _iter_rows(self):
        with get_session(self.Session) as session:
            query = session.query(Measurement).order_by(Measurement.timestamp, Measurement.id)
            for measurement in query.all():
                yield self._row_for_measurement(measurement)

    @staticmethod
    def _row_for_measurement(measurement: Measurement) -> list:
        cells = [
            measurement.latency_ms,
            measurement.download_mbps,
            measurement.upload_mbps,
            measurement.download_bytes,
            measurement.upload_bytes,
            measurement.threads,
            measurement.duration_seconds,
            measurement.error,
        ]
        normalized = [CSVExporter._blank_if_none(value) for value in cells]
        return [
            measurement.timestamp.isoformat(),
            measurement.target,
            measurement.status,
            *normalized,
        ]

    @staticmethod
    def _blank_if_none(value):
        return "" if value is None else value

    def write_snapshot(self) -> Path:
        buffer = self.build_csv()
        target = self.config.paths.data_dir / self.config.export.csv_name
        target.write_text(buffer.getvalue(), encoding="utf-8")
        return target
