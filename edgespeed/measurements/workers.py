"""Download and upload transfer workers.

Each worker owns one connection slot for the length of a throughput phase and
adds every byte it moves to the phase's shared counter. Workers never raise
transient transfer errors: they back off and retry while the phase is live and
exit quietly once its cancellation token is set.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import AsyncIterator, Awaitable, Callable, List, Sequence

import aiohttp

from .models import PhaseContext

LOGGER = logging.getLogger(__name__)

UPLOAD_SLICE_SIZE = 64 * 1024

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def build_upload_slices(size: int, slice_size: int = UPLOAD_SLICE_SIZE) -> List[bytes]:
    """Build the upload payload once and cut it into the slices every worker shares."""
    payload = (bytes(range(256)) * (size // 256 + 1))[:size]
    return [payload[offset:offset + slice_size] for offset in range(0, size, slice_size)]


async def _backoff(context: PhaseContext, delay: float) -> None:
    try:
        await asyncio.wait_for(context.cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def _saturate(
    attempt: Callable[[], Awaitable[None]],
    context: PhaseContext,
    retry_backoff: float,
    label: str,
) -> None:
    """Re-issue ``attempt`` until the phase is cancelled.

    Cancellation, whether by token or by task cancel, is a normal exit.
    """
    try:
        while not context.cancelled:
            try:
                await attempt()
            except TRANSIENT_ERRORS as exc:
                if context.cancelled:
                    break
                LOGGER.debug("%s request failed: %s", label, exc)
                await _backoff(context, retry_backoff)
    except asyncio.CancelledError:
        LOGGER.debug("%s cancelled", label)


async def download_worker(
    http: aiohttp.ClientSession,
    url: str,
    context: PhaseContext,
    retry_backoff: float,
    worker_id: int = 0,
) -> None:
    async def attempt() -> None:
        async with http.get(
            url,
            params={"t": repr(random.random())},
            headers=NO_CACHE_HEADERS,
        ) as resp:
            resp.raise_for_status()
            async for chunk in resp.content.iter_any():
                context.counter.add(len(chunk))
                if context.cancelled:
                    return

    await _saturate(attempt, context, retry_backoff, f"Download worker {worker_id}")


async def _metered_payload(slices: Sequence[bytes], context: PhaseContext) -> AsyncIterator[bytes]:
    for piece in slices:
        if context.cancelled:
            return
        yield piece
        # Resumed only after the transport accepted the slice.
        context.counter.add(len(piece))


async def upload_worker(
    http: aiohttp.ClientSession,
    url: str,
    slices: Sequence[bytes],
    context: PhaseContext,
    retry_backoff: float,
    worker_id: int = 0,
) -> None:
    async def attempt() -> None:
        async with http.post(
            url,
            params={"t": repr(random.random())},
            data=_metered_payload(slices, context),
            headers={**NO_CACHE_HEADERS, "Content-Type": "application/octet-stream"},
        ) as resp:
            await resp.read()
            resp.raise_for_status()

    await _saturate(attempt, context, retry_backoff, f"Upload worker {worker_id}")
