"""
Synthetic progress between sparse real progress events.

Real milestones from a long pipeline arrive irregularly, sometimes minutes
apart. Between them the estimator nudges the displayed value upward on a
fixed cadence toward a ceiling of ``min(last_real + headroom,
max_synthetic)``, so the bar keeps moving without ever looking finished.
A new real tick cancels the interpolation and restarts it toward the next
ceiling. Only the final real tick (fraction 1.0) shows 1.0.

Each job owns one estimator, holding exactly one timer handle that is
always cancelled before it is replaced or the job ends.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from ingest_guard.config.loader import IngestConfig

logger = logging.getLogger(__name__)

ProgressListener = Callable[[float, str], None]

COMPLETE = 1.0


@dataclass(frozen=True)
class ProgressState:
    """Snapshot of an estimator."""
    value: float
    ceiling: float
    last_real: float
    message: str
    finished: bool
    timer_active: bool


class ProgressEstimator:
    """Monotonic progress value fed by real ticks and filled by a timer.

    The timer is an asyncio task, created only when ``tick`` runs inside an
    event loop. Without a loop the estimator still tracks real ticks and
    ``advance`` can be driven by hand.

    Args:
        on_update: Called with (value, message) whenever the value changes
        headroom: How far past the last real tick interpolation may go
        step: Synthetic increment per timer interval
        interval: Seconds between synthetic increments
        max_synthetic: Synthetic values never reach this
    """

    def __init__(
        self,
        on_update: Optional[ProgressListener] = None,
        headroom: float = 0.5,
        step: float = 0.01,
        interval: float = 5.0,
        max_synthetic: float = 0.95,
    ):
        self.on_update = on_update
        self.headroom = headroom
        self.step = step
        self.interval = interval
        self.max_synthetic = max_synthetic

        self._value = 0.0
        self._last_real = 0.0
        self._ceiling = 0.0
        self._message = ""
        self._finished = False
        self._timer: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls, config: IngestConfig, on_update: Optional[ProgressListener] = None
    ) -> "ProgressEstimator":
        progress = config.progress
        return cls(
            on_update=on_update,
            headroom=progress.headroom,
            step=progress.step,
            interval=progress.interval_seconds,
            max_synthetic=progress.max_synthetic,
        )

    @property
    def value(self) -> float:
        return self._value

    @property
    def ceiling(self) -> float:
        return self._ceiling

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def state(self) -> ProgressState:
        return ProgressState(
            value=self._value,
            ceiling=self._ceiling,
            last_real=self._last_real,
            message=self._message,
            finished=self._finished,
            timer_active=self._timer is not None and not self._timer.done(),
        )

    def tick(self, fraction: float, message: str = "") -> None:
        """Apply a real progress event."""
        if self._finished:
            logger.debug("Ignoring progress tick %.2f after finish", fraction)
            return
        fraction = float(fraction)
        if not math.isfinite(fraction):
            logger.debug("Ignoring non-finite progress tick %r", fraction)
            return
        self._cancel_timer()

        fraction = max(0.0, min(COMPLETE, fraction))
        if message:
            self._message = message

        if fraction >= COMPLETE:
            self._finished = True
            self._last_real = COMPLETE
            self._ceiling = COMPLETE
            self._set(COMPLETE)
            return

        self._last_real = max(self._last_real, fraction)
        self._ceiling = round(min(self._last_real + self.headroom, self.max_synthetic), 4)
        # A real tick never shows 1.0 and never moves the bar backwards
        self._set(max(self._value, min(fraction, self.max_synthetic)))
        self._start_timer()

    def advance(self) -> bool:
        """Take one synthetic step toward the ceiling.

        Returns False, leaving the value unchanged, once the next step would
        reach the ceiling or the estimator has finished.
        """
        if self._finished:
            return False
        candidate = round(self._value + self.step, 4)
        if candidate >= self._ceiling:
            return False
        self._set(candidate)
        return True

    def stop(self) -> None:
        """End the job: clear the timer and ignore later ticks."""
        self._finished = True
        self._cancel_timer()

    def _set(self, value: float) -> None:
        if value == self._value and value != COMPLETE:
            return
        self._value = value
        if self.on_update is not None:
            self.on_update(value, self._message)

    def _start_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.create_task(self._run_timer())

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.advance():
                break
