"""
Progress - Best-effort progress notifications.

The core never waits on a listener: events are handed to an optional
callable, and anything the listener raises is logged and dropped.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional


logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    """Snapshot of one phase's progress."""
    phase: str                 # "scanning", "hashing" or "packaging"
    percent: float             # 0.0 - 100.0
    processed: int = 0
    total: int = 0
    throughput: float = 0.0    # Units per second (files, or percent for packaging)
    elapsed_seconds: float = 0.0
    remaining_seconds: float = 0.0


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """
    Turns processed/total counts into ProgressEvents for one phase.

    A reporter without a callback is a no-op, so callers never need to
    check whether anyone is listening.
    """

    def __init__(self, phase: str, callback: Optional[ProgressCallback] = None):
        self.phase = phase
        self.callback = callback
        self._start = time.monotonic()

    def update(self, processed: int, total: int) -> None:
        """Report progress as a count of processed units out of total."""
        if self.callback is None:
            return

        elapsed = time.monotonic() - self._start
        fraction = processed / total if total > 0 else 1.0
        fraction = min(max(fraction, 0.0), 1.0)

        throughput = processed / elapsed if elapsed > 0 else 0.0
        remaining = 0.0
        if 0 < fraction < 1:
            remaining = elapsed / fraction * (1 - fraction)

        self._emit(ProgressEvent(
            phase=self.phase,
            percent=fraction * 100,
            processed=processed,
            total=total,
            throughput=throughput,
            elapsed_seconds=elapsed,
            remaining_seconds=remaining,
        ))

    def update_fraction(self, fraction: float) -> None:
        """Report progress as a fraction, e.g. parsed from archiver output."""
        self.update(int(round(fraction * 100)), 100)

    def _emit(self, event: ProgressEvent) -> None:
        try:
            self.callback(event)
        except Exception as e:
            logger.error(f"Progress listener error: {e}")


def queue_sink(queue: "asyncio.Queue[ProgressEvent]") -> ProgressCallback:
    """
    Adapt an asyncio.Queue into a progress callback.

    Events are dropped when the queue is full. Must be called from the
    thread running the queue's event loop.
    """
    def _put(event: ProgressEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug(f"Progress queue full, dropping {event.phase} event")
    return _put
