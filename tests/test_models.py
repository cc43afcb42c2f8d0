from __future__ import annotations

import asyncio
import math
from concurrent.futures import ThreadPoolExecutor

import pytest

from edgespeed.measurements.models import (
    ByteCounter,
    LatencyResult,
    Phase,
    TestSession,
    phase_progress,
    throughput_mbps,
)


def test_throughput_uses_binary_megabits():
    assert throughput_mbps(125_000_000, 10) == pytest.approx(95.367, abs=1e-3)


def test_throughput_with_no_elapsed_time_is_zero():
    assert throughput_mbps(1_000_000, 0) == 0.0


def test_latency_average_and_display():
    result = LatencyResult(samples=[10, 12, 11, 9, 13])

    assert result.average_ms == 11
    assert result.display == "11"


def test_latency_without_samples_has_no_average():
    result = LatencyResult(failures=5)

    assert result.average_ms is None
    assert result.display == "--"


def test_download_progress_is_monotonic_and_bounded():
    session = TestSession(target="x", threads=4, phase=Phase.DOWNLOAD)
    reported = []
    for elapsed in [0.05, 1.0, 0.8, 4.0, 3.9, 9.99, 10.0, 12.5, 30.0]:
        reported.append(session.advance_progress(phase_progress(Phase.DOWNLOAD, elapsed, 10.0)))

    assert reported == sorted(reported)
    assert all(0 <= value <= 50 for value in reported)
    assert reported[-1] == 50


def test_upload_progress_is_monotonic_and_bounded():
    session = TestSession(target="x", threads=4, phase=Phase.DOWNLOAD)
    session.advance_progress(50.0)
    session.phase = Phase.UPLOAD
    reported = []
    for elapsed in [0.01, 2.0, 1.5, 6.0, 10.0, 11.0]:
        reported.append(session.advance_progress(phase_progress(Phase.UPLOAD, elapsed, 10.0)))

    assert reported == sorted(reported)
    assert all(50 <= value <= 100 for value in reported)
    assert reported[-1] == 100


def test_progress_cannot_pass_phase_ceiling():
    session = TestSession(target="x", threads=4, phase=Phase.DOWNLOAD)

    assert session.advance_progress(75.0) == 50.0


def test_counter_has_no_lost_updates_across_threads():
    counter = ByteCounter()
    workers, increments, size = 8, 5_000, 1024

    def work():
        for _ in range(increments):
            counter.add(size)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        for future in [pool.submit(work) for _ in range(workers)]:
            future.result()

    assert counter.value == workers * increments * size


def test_counter_has_no_lost_updates_across_tasks():
    counter = ByteCounter()
    workers, increments, size = 6, 2_000, 65536

    async def work():
        for _ in range(increments):
            counter.add(size)
            await asyncio.sleep(0)

    async def run():
        await asyncio.gather(*(work() for _ in range(workers)))

    asyncio.run(run())

    assert counter.value == workers * increments * size


def test_session_status_and_serialisation():
    session = TestSession(target="http://edge", threads=4, running=True)
    session.latency.samples.append(9.5)
    session.download_mbps = math.inf
    session.finish(Phase.DONE, error="boom")

    data = session.to_dict()

    assert session.failed
    assert data["status"] == "failed"
    assert data["latency_ms"] == 9.5
    assert data["download_mbps"] is None
    assert data["duration_seconds"] is not None
    assert not session.running


def test_stopped_session_is_not_failed():
    session = TestSession(target="x", threads=1, running=True)
    session.finish(Phase.STOPPED)

    assert session.status == "stopped"
    assert not session.failed
