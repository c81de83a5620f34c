from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .constants import (
    ADAPT_INTERVAL,
    FAST_THROUGHPUT,
    INITIAL_CHUNK_SIZE,
    KIB,
    MAX_CHUNK_SIZE,
    MEDIUM_THROUGHPUT,
    MIB,
    MID_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    SPEED_SAMPLE_S,
)

Clock = Callable[[], float]


def format_speed(bytes_per_sec: float) -> str:
    if bytes_per_sec >= MIB:
        return f"{bytes_per_sec / MIB:.1f} MB/s"
    return f"{bytes_per_sec / KIB:.1f} KB/s"


def format_eta(seconds: float) -> str:
    if seconds < 60:
        return f"{math.ceil(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {math.ceil(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


@dataclass
class ThroughputMeter:
    """Speed and ETA, re-estimated at most once per sampling window."""

    clock: Clock = time.monotonic
    sample_s: float = SPEED_SAMPLE_S
    window_start: float = 0.0
    window_bytes: int = 0
    last_update: float = 0.0
    bytes_per_sec: float = 0.0

    def reset(self) -> None:
        self.window_start = self.clock()
        self.window_bytes = 0
        self.last_update = 0.0
        self.bytes_per_sec = 0.0

    def record(self, size: int) -> bool:
        """Count ``size`` bytes; True when a fresh estimate was produced."""
        self.window_bytes += size
        now = self.clock()
        if now - self.last_update <= self.sample_s:
            return False
        elapsed = now - self.window_start
        fresh = False
        if elapsed > 0:
            self.bytes_per_sec = self.window_bytes / elapsed
            fresh = True
        self.window_start = now
        self.window_bytes = 0
        self.last_update = now
        return fresh

    def eta(self, remaining: int) -> Optional[float]:
        if self.bytes_per_sec <= 0:
            return None
        return remaining / self.bytes_per_sec


@dataclass
class ChunkSizer:
    """Chooses the next chunk size from throughput measured every ``interval`` chunks."""

    clock: Clock = time.monotonic
    chunk_size: int = INITIAL_CHUNK_SIZE
    interval: int = ADAPT_INTERVAL
    chunks: int = 0
    measure_start: float = field(default=0.0)
    measure_bytes: int = 0

    def start(self) -> None:
        self.chunks = 0
        self.measure_start = self.clock()
        self.measure_bytes = 0

    def record(self, size: int) -> int:
        self.chunks += 1
        self.measure_bytes += size
        if self.chunks % self.interval == 0:
            now = self.clock()
            elapsed = now - self.measure_start
            if elapsed > 0:
                self.chunk_size = self.pick(self.measure_bytes / elapsed)
            self.measure_start = now
            self.measure_bytes = 0
        return self.chunk_size

    @staticmethod
    def pick(bytes_per_sec: float) -> int:
        if bytes_per_sec > FAST_THROUGHPUT:
            return MAX_CHUNK_SIZE
        if bytes_per_sec > MEDIUM_THROUGHPUT:
            return MID_CHUNK_SIZE
        return MIN_CHUNK_SIZE


StatusListener = Callable[["TransferStatus"], None]


@dataclass
class TransferStatus:
    """What a user sees: a status line, a percentage, speed and ETA."""

    status: str = "Idle"
    progress: int = 0
    speed: str = ""
    eta: str = ""
    listener: Optional[StatusListener] = field(default=None, repr=False, compare=False)

    def update(self, **changes) -> None:
        changed = False
        for name, value in changes.items():
            if getattr(self, name) != value:
                setattr(self, name, value)
                changed = True
        if changed and self.listener is not None:
            self.listener(self)

    def show_rate(self, meter: ThroughputMeter, remaining: int) -> None:
        eta = meter.eta(remaining)
        self.update(
            speed=format_speed(meter.bytes_per_sec),
            eta=format_eta(eta) if eta is not None else "",
        )
