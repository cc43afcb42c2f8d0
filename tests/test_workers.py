from __future__ import annotations

import asyncio

import aiohttp

from edgespeed.measurements.models import Phase, PhaseContext
from edgespeed.measurements.workers import (
    UPLOAD_SLICE_SIZE,
    build_upload_slices,
    download_worker,
    upload_worker,
)


def test_upload_slices_cover_payload():
    slices = build_upload_slices(2 * 1024 * 1024)

    assert sum(len(piece) for piece in slices) == 2 * 1024 * 1024
    assert all(len(piece) == UPLOAD_SLICE_SIZE for piece in slices)
    assert slices[0][:3] == b"\x00\x01\x02"


def test_upload_slices_keep_short_tail():
    slices = build_upload_slices(UPLOAD_SLICE_SIZE + 10)

    assert [len(piece) for piece in slices] == [UPLOAD_SLICE_SIZE, 10]


async def _run_pool(make_worker, workers: int, seconds: float) -> PhaseContext:
    context = PhaseContext(phase=Phase.DOWNLOAD, duration=seconds)
    async with aiohttp.ClientSession(auto_decompress=False) as http:
        tasks = [asyncio.ensure_future(make_worker(http, context, i)) for i in range(workers)]
        await asyncio.sleep(seconds)
        context.cancel.set()
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(result is None for result in results)
    return context


def test_download_workers_count_bytes_and_exit_on_cancel(live_server):
    url = f"{live_server}/api/down"

    context = asyncio.run(
        _run_pool(lambda http, ctx, i: download_worker(http, url, ctx, 0.02, worker_id=i), workers=3, seconds=0.3)
    )

    assert context.counter.value > 0


def test_upload_workers_count_acknowledged_slices(live_server):
    url = f"{live_server}/api/up"
    slices = build_upload_slices(4 * UPLOAD_SLICE_SIZE)

    context = asyncio.run(
        _run_pool(
            lambda http, ctx, i: upload_worker(http, url, slices, ctx, 0.02, worker_id=i),
            workers=2,
            seconds=0.3,
        )
    )

    assert context.counter.value > 0
    assert context.counter.value % UPLOAD_SLICE_SIZE == 0


def test_workers_retry_quietly_against_unreachable_server(unreachable_url):
    url = f"{unreachable_url}/api/down"

    context = asyncio.run(
        _run_pool(lambda http, ctx, i: download_worker(http, url, ctx, 0.02, worker_id=i), workers=2, seconds=0.2)
    )

    assert context.counter.value == 0
