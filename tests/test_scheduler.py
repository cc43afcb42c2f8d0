from __future__ import annotations

import logging
from dataclasses import replace

from edgespeed.scheduler import SchedulerService


class StubManager:
    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    def run_speedtest(self):
        self.calls += 1
        if self.error:
            raise self.error


class StubExporter:
    def __init__(self):
        self.snapshots = 0

    def write_snapshot(self):
        self.snapshots += 1


def test_disabled_scheduler_does_not_start(config):
    service = SchedulerService(config, StubManager(), StubExporter())

    service.start()

    assert not service.started


def test_enabled_scheduler_registers_job(config):
    config.scheduler = replace(config.scheduler, enabled=True, interval_minutes=5)
    service = SchedulerService(config, StubManager(), StubExporter())

    service.start()
    try:
        assert service.started
        job = service.scheduler.get_job("scheduled-speedtest")
        assert job is not None
        service.start()
        assert len(service.scheduler.get_jobs()) == 1
    finally:
        service.shutdown()

    assert not service.started


def test_cycle_runs_and_snapshots(config):
    manager, exporter = StubManager(), StubExporter()
    service = SchedulerService(config, manager, exporter)

    service._run_cycle()

    assert manager.calls == 1
    assert exporter.snapshots == 1


def test_cycle_failure_is_logged(config, caplog):
    exporter = StubExporter()
    service = SchedulerService(config, StubManager(error=RuntimeError("edge down")), exporter)

    with caplog.at_level(logging.ERROR):
        service._run_cycle()

    assert "edge down" in caplog.text
    assert exporter.snapshots == 0
