"""Shared dataclasses and helpers for speedtest runs."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

BITS_PER_MEGABIT = 1024 * 1024

# Ticks closer than this to the phase start would divide by almost nothing.
MIN_TICK_ELAPSED = 0.01


class Phase(str, Enum):
    IDLE = "idle"
    LATENCY = "latency"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    DONE = "done"
    STOPPED = "stopped"


class SpeedtestError(Exception):
    """Base class for speedtest failures that end a run."""


class ConnectivityError(SpeedtestError):
    """Raised when every latency probe failed."""


class SpeedtestStopped(Exception):
    """Raised inside a phase when the user stopped the run."""


def throughput_mbps(total_bytes: int, elapsed_seconds: float) -> float:
    """Megabits (2**20 bits) per second moved over ``elapsed_seconds``."""
    if elapsed_seconds <= 0:
        return 0.0
    return total_bytes * 8 / BITS_PER_MEGABIT / elapsed_seconds


def phase_progress(phase: Phase, elapsed: float, duration: float) -> float:
    """Overall progress percentage for a throughput phase.

    Download covers the first half of the bar, upload the second half.
    """
    fraction = min(max(elapsed / duration, 0.0), 1.0) if duration > 0 else 1.0
    base = 50.0 if phase is Phase.UPLOAD else 0.0
    return base + fraction * 50.0


def phase_ceiling(phase: Phase) -> float:
    if phase is Phase.DOWNLOAD:
        return 50.0
    if phase is Phase.UPLOAD:
        return 100.0
    return 0.0


class ByteCounter:
    """Byte total shared by every worker of a phase."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def add(self, amount: int) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        return self._value


@dataclass
class PhaseContext:
    phase: Phase
    duration: float
    started_at: float = field(default_factory=time.perf_counter)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    counter: ByteCounter = field(default_factory=ByteCounter)

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def elapsed(self) -> float:
        return time.perf_counter() - self.started_at


@dataclass
class LatencyResult:
    samples: List[float] = field(default_factory=list)
    failures: int = 0

    @property
    def average_ms(self) -> Optional[float]:
        if not self.samples:
            return None
        return sum(self.samples) / len(self.samples)

    @property
    def display(self) -> str:
        average = self.average_ms
        return "--" if average is None else f"{average:.0f}"


@dataclass
class TestSession:
    """State of one full latency/download/upload run."""

    __test__ = False  # keep pytest from collecting this as a test class

    target: str
    threads: int
    phase: Phase = Phase.IDLE
    running: bool = False
    progress: float = 0.0
    latency: LatencyResult = field(default_factory=LatencyResult)
    download_mbps: Optional[float] = None
    upload_mbps: Optional[float] = None
    download_bytes: Optional[int] = None
    upload_bytes: Optional[int] = None
    finalized: Set[str] = field(default_factory=set)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def latency_ms(self) -> Optional[float]:
        return self.latency.average_ms

    @property
    def failed(self) -> bool:
        return self.phase is Phase.DONE and self.error is not None

    @property
    def status(self) -> str:
        if self.phase is Phase.STOPPED:
            return "stopped"
        if self.failed:
            return "failed"
        if self.phase is Phase.DONE:
            return "done"
        return self.phase.value

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def advance_progress(self, value: float) -> float:
        """Move progress forward, never past the current phase's ceiling."""
        ceiling = phase_ceiling(self.phase)
        self.progress = max(self.progress, min(value, ceiling))
        return self.progress

    def finish(self, phase: Phase, error: Optional[str] = None) -> None:
        self.phase = phase
        self.error = error
        self.running = False
        self.finished_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "status": self.status,
            "phase": self.phase.value,
            "threads": self.threads,
            "progress": round(self.progress, 1),
            "latency_ms": _rounded(self.latency_ms, 1),
            "latency_samples_ms": [round(sample, 2) for sample in self.latency.samples],
            "latency_failures": self.latency.failures,
            "download_mbps": _rounded(self.download_mbps, 2),
            "upload_mbps": _rounded(self.upload_mbps, 2),
            "download_bytes": self.download_bytes,
            "upload_bytes": self.upload_bytes,
            "finalized": sorted(self.finalized),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }


def _rounded(value: Optional[float], digits: int) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return round(value, digits)
