"""Three-phase speedtest controller: latency, download, upload.

The controller owns one ``TestSession`` at a time and a ``PhaseContext`` for the
phase in progress. Throughput phases fan out a fixed pool of workers that share
the context's byte counter and cancellation token, wait the fixed phase
duration, then cancel and join the pool before computing the final speed over
the measured elapsed time.

Progress is reported through a listener callable receiving ``(event, data)``
pairs: reset, phase, metric, progress, complete, stopped and error.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

import aiohttp

from ..config import ClientConfig
from .models import (
    MIN_TICK_ELAPSED,
    ConnectivityError,
    Phase,
    PhaseContext,
    SpeedtestStopped,
    TestSession,
    phase_ceiling,
    phase_progress,
    throughput_mbps,
)
from .workers import NO_CACHE_HEADERS, build_upload_slices, download_worker, upload_worker

LOGGER = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

PING_PATH = "/api/ping"
DOWNLOAD_PATH = "/api/down"
UPLOAD_PATH = "/api/up"


class SpeedtestController:
    def __init__(self, base_url: str, settings: ClientConfig, listener: Optional[Listener] = None):
        self.base_url = base_url.rstrip("/")
        self.settings = settings
        self.listener = listener
        self.session: Optional[TestSession] = None
        self._context: Optional[PhaseContext] = None
        self._http: Optional[aiohttp.ClientSession] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self.session is not None and self.session.running

    @property
    def phase(self) -> Phase:
        return self.session.phase if self.session else Phase.IDLE

    @property
    def active_tasks(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self.listener is None:
            return
        try:
            self.listener(event, data)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Speedtest listener failed on %s event", event)

    async def start(self) -> Optional[TestSession]:
        """Run a full test. Returns ``None`` if a run is already in progress."""
        if self.is_running:
            LOGGER.warning("Speedtest already running, ignoring start request")
            return None

        session = TestSession(target=self.base_url, threads=self.settings.threads, running=True)
        self.session = session
        self._emit("reset", {"target": self.base_url})
        LOGGER.info("Starting speedtest against %s with %d threads", self.base_url, self.settings.threads)

        connector = aiohttp.TCPConnector(limit=self.settings.threads * 2, force_close=False)
        # Throughput requests run until the phase cancels them; probes set their own timeout.
        timeout = aiohttp.ClientTimeout(total=None)
        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout, auto_decompress=False) as http:
                self._http = http
                await self.run_latency_phase()
                await self.run_download_phase()
                await self.run_upload_phase()
        except SpeedtestStopped:
            session.finish(Phase.STOPPED)
            LOGGER.info("Speedtest stopped by user")
            self._emit("stopped", session.to_dict())
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Speedtest failed: %s", exc)
            session.finish(Phase.DONE, error=str(exc) or exc.__class__.__name__)
            self._emit("error", {"message": session.error})
        else:
            session.advance_progress(100.0)
            session.finish(Phase.DONE)
            LOGGER.info(
                "Speedtest complete: latency %s ms, down %.2f Mbps / up %.2f Mbps",
                session.latency.display,
                session.download_mbps or 0,
                session.upload_mbps or 0,
            )
            self._emit("progress", {"percent": session.progress})
            self._emit("complete", {"results": session.to_dict()})
        finally:
            session.running = False
            self._http = None
            self._context = None
            self._tasks.clear()
        return session

    def stop(self) -> None:
        """Cancel the run in progress. Safe to call at any time."""
        session = self.session
        if session is None or not session.running:
            return
        session.running = False
        if self._context is not None:
            self._context.cancel.set()
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Phase plumbing
    # ------------------------------------------------------------------

    def _check_running(self) -> None:
        if not self.is_running:
            raise SpeedtestStopped()

    def _enter_phase(self, phase: Phase, duration: float) -> PhaseContext:
        self._check_running()
        self.session.phase = phase
        context = PhaseContext(phase=phase, duration=duration)
        self._context = context
        LOGGER.debug("Entering %s phase", phase.value)
        self._emit("phase", {"phase": phase.value})
        return context

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pause(self, context: PhaseContext, delay: float) -> None:
        """Sleep ``delay`` seconds unless the run is stopped first."""
        try:
            await asyncio.wait_for(context.cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise SpeedtestStopped()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # ------------------------------------------------------------------
    # Latency
    # ------------------------------------------------------------------

    async def _probe(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self.settings.probe_timeout)
        async with self._http.get(
            self._url(PING_PATH),
            params={"t": str(int(time.time() * 1000))},
            headers=NO_CACHE_HEADERS,
            timeout=timeout,
        ) as resp:
            await resp.read()
            resp.raise_for_status()

    async def run_latency_phase(self) -> float:
        context = self._enter_phase(Phase.LATENCY, duration=0.0)
        result = self.session.latency
        count = self.settings.ping_count

        for index in range(count):
            self._check_running()
            started = time.perf_counter()
            try:
                await self._spawn(self._probe())
            except asyncio.CancelledError:
                if not self.is_running:
                    raise SpeedtestStopped() from None
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                result.failures += 1
                LOGGER.warning("Latency probe %d/%d failed: %s", index + 1, count, exc)
            else:
                rtt_ms = (time.perf_counter() - started) * 1000
                result.samples.append(rtt_ms)
                self._emit("metric", {"name": "latency", "value": rtt_ms, "final": False})

            if index < count - 1:
                await self._pause(context, self.settings.ping_delay)

        average = result.average_ms
        if average is None:
            raise ConnectivityError(f"No connectivity: all {count} latency probes to {self.base_url} failed")

        self.session.finalized.add("latency")
        LOGGER.info("Latency: %.1f ms over %d probes", average, len(result.samples))
        self._emit("metric", {"name": "latency", "value": average, "final": True})
        return average

    # ------------------------------------------------------------------
    # Throughput
    # ------------------------------------------------------------------

    async def run_download_phase(self) -> float:
        context = self._enter_phase(Phase.DOWNLOAD, duration=self.settings.duration)
        url = self._url(DOWNLOAD_PATH)
        workers = [
            download_worker(self._http, url, context, self.settings.retry_backoff, worker_id=i)
            for i in range(self.settings.threads)
        ]
        speed = await self._run_throughput_phase(context, workers)
        self.session.download_mbps = speed
        self.session.download_bytes = context.counter.value
        self.session.finalized.add("download")
        return speed

    async def run_upload_phase(self) -> float:
        context = self._enter_phase(Phase.UPLOAD, duration=self.settings.duration)
        url = self._url(UPLOAD_PATH)
        slices = build_upload_slices(self.settings.upload_size)
        workers = [
            upload_worker(self._http, url, slices, context, self.settings.retry_backoff, worker_id=i)
            for i in range(self.settings.threads)
        ]
        speed = await self._run_throughput_phase(context, workers)
        self.session.upload_mbps = speed
        self.session.upload_bytes = context.counter.value
        self.session.finalized.add("upload")
        return speed

    async def _run_throughput_phase(self, context: PhaseContext, workers) -> float:
        pool = [self._spawn(worker) for worker in workers]
        ticker = self._spawn(self._report_loop(context))
        try:
            await self._pause(context, context.duration)
        finally:
            context.cancel.set()
            for task in (*pool, ticker):
                task.cancel()
            await asyncio.gather(*pool, ticker, return_exceptions=True)
        # A stop that lands while the pool is being joined still wins.
        self._check_running()

        elapsed = context.elapsed()
        total = context.counter.value
        speed = throughput_mbps(total, elapsed)
        progress = self.session.advance_progress(phase_ceiling(context.phase))
        LOGGER.info(
            "%s: %.2f Mbps (%d bytes in %.2fs)",
            context.phase.value.capitalize(),
            speed,
            total,
            elapsed,
        )
        self._emit("metric", {"name": context.phase.value, "value": speed, "final": True})
        self._emit("progress", {"percent": progress})
        return speed

    async def _report_loop(self, context: PhaseContext) -> None:
        while not context.cancelled:
            await asyncio.sleep(self.settings.tick_interval)
            self.report_tick(context)

    def report_tick(self, context: PhaseContext) -> None:
        if not self.is_running or context.cancelled:
            return
        elapsed = context.elapsed()
        if elapsed < MIN_TICK_ELAPSED:
            return
        speed = throughput_mbps(context.counter.value, elapsed)
        progress = self.session.advance_progress(phase_progress(context.phase, elapsed, context.duration))
        self._emit("metric", {"name": context.phase.value, "value": speed, "final": False})
        self._emit("progress", {"percent": progress})
