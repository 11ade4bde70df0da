"""
Progress Estimator - Time-based Synthetic Progress
==================================================
Image transfers and the scanner sweep report only start and end. Between
those signals a SyntheticProgress handle interpolates linearly across its
phase band against an expected duration:

    value(t) = min(end - 1, start + floor((end - start) * t / expected))

A handle stops ticking when:
    (a) stop() is called because the real completion signal arrived
    (b) the job is no longer RUNNING
    (c) the expected duration has elapsed (it then holds at end - 1)

Handles are scoped resources: ``async with estimator.track(...)`` guarantees
the timer task is cancelled on every exit path.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Sequence

logger = logging.getLogger(__name__)


# advance(request_id, progress, step) -> True if the registry accepted it
AdvanceCallback = Callable[[str, int, str | None], bool]
RunningCheck = Callable[[str], bool]


@dataclass(frozen=True)
class Band:
    """A contiguous progress range [start, end) owned by one phase."""

    start: int
    end: int

    def __post_init__(self):
        if not 0 <= self.start < self.end <= 100:
            raise ValueError(f"Invalid progress band {self.start}-{self.end}")

    @property
    def ceiling(self) -> int:
        return self.end - 1

    def overlaps(self, other: "Band") -> bool:
        return self.start < other.end and other.start < self.end


# =============================================================================
# PHASE BANDS
# =============================================================================

SETUP_BAND = Band(0, 10)
ACQUISITION_BAND = Band(10, 55)
SCANNING_BAND = Band(55, 95)
AGGREGATION_BAND = Band(95, 100)

ACQUIRED_MILESTONE = 50

DOWNLOAD_STEPS: tuple[tuple[int, str], ...] = (
    (25, "Connecting to registry"),
    (35, "Downloading image layers"),
    (45, "Extracting image data"),
    (55, "Finalizing image download"),
)


def scanner_milestone(index: int, total: int, band: Band = SCANNING_BAND) -> int:
    """Progress reported when tool ``index`` (0-based) of ``total`` completes."""
    span = band.end - band.start
    return band.start + round(span * (index + 1) / (total + 1))


# =============================================================================
# SYNTHETIC PROGRESS HANDLE
# =============================================================================

class SyntheticProgress:
    """Cancellable timer emitting interpolated progress for one phase band."""

    def __init__(
        self,
        request_id: str,
        band: Band,
        expected_seconds: float,
        tick_seconds: float,
        advance: AdvanceCallback,
        is_running: RunningCheck,
        steps: Sequence[tuple[int, str]] = (),
        on_stop: Callable[["SyntheticProgress"], None] | None = None,
    ):
        if expected_seconds <= 0 or tick_seconds <= 0:
            raise ValueError("expected_seconds and tick_seconds must be positive")
        self.request_id = request_id
        self.band = band
        self.expected_seconds = expected_seconds
        self.tick_seconds = tick_seconds
        self.steps = tuple(steps)
        self._advance = advance
        self._is_running = is_running
        self._on_stop = on_stop
        self._task: asyncio.Task | None = None
        self._stopped = False
        self.ticks = 0

    # -------------------------------------------------------------------------
    # Pure helpers
    # -------------------------------------------------------------------------

    def value_at(self, elapsed: float) -> int:
        fraction = min(max(elapsed / self.expected_seconds, 0.0), 1.0)
        span = self.band.end - self.band.start
        return min(self.band.ceiling, self.band.start + math.floor(span * fraction))

    def step_for(self, value: int) -> str | None:
        for threshold, label in self.steps:
            if value < threshold:
                return label
        return self.steps[-1][1] if self.steps else None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "SyntheticProgress":
        if self._task is not None:
            raise RuntimeError("Synthetic progress already started")
        self._task = asyncio.create_task(
            self._run(), name=f"progress-{self.request_id}-{self.band.start}"
        )
        return self

    def stop(self) -> None:
        """Stop ticking. Safe to call repeatedly and from any exit path."""
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._on_stop is not None:
            self._on_stop(self)

    async def __aenter__(self) -> "SyntheticProgress":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            while True:
                await asyncio.sleep(self.tick_seconds)
                if not self._is_running(self.request_id):
                    return
                elapsed = loop.time() - started
                value = self.value_at(elapsed)
                self.ticks += 1
                self._advance(self.request_id, value, self.step_for(value))
                if elapsed >= self.expected_seconds:
                    logger.debug(
                        f"[{self.request_id}] estimate for band "
                        f"{self.band.start}-{self.band.end} exhausted, holding at {value}"
                    )
                    return
        except asyncio.CancelledError:
            pass


# =============================================================================
# ESTIMATOR
# =============================================================================

class ProgressEstimator:
    """
    Creates SyntheticProgress handles and keeps them alongside their job so
    every exit path can cancel them.
    """

    def __init__(
        self,
        advance: AdvanceCallback,
        is_running: RunningCheck,
        tick_seconds: float = 1.0,
    ):
        self._advance = advance
        self._is_running = is_running
        self.tick_seconds = tick_seconds
        self._handles: dict[str, list[SyntheticProgress]] = {}

    def track(
        self,
        request_id: str,
        band: Band,
        expected_seconds: float,
        steps: Sequence[tuple[int, str]] = (),
    ) -> SyntheticProgress:
        """
        Create an (unstarted) handle for a band.

        Raises:
            ValueError: another live handle for this request overlaps ``band``
        """
        for handle in self._handles.get(request_id, []):
            if handle.band.overlaps(band):
                raise ValueError(
                    f"Band {band.start}-{band.end} overlaps active band "
                    f"{handle.band.start}-{handle.band.end} for {request_id}"
                )
        handle = SyntheticProgress(
            request_id=request_id,
            band=band,
            expected_seconds=expected_seconds,
            tick_seconds=self.tick_seconds,
            advance=self._advance,
            is_running=self._is_running,
            steps=steps,
            on_stop=self._forget,
        )
        self._handles.setdefault(request_id, []).append(handle)
        return handle

    def active_handles(self, request_id: str) -> list[SyntheticProgress]:
        return list(self._handles.get(request_id, []))

    def cancel_all(self, request_id: str) -> int:
        handles = self._handles.pop(request_id, [])
        for handle in handles:
            handle.stop()
        return len(handles)

    def _forget(self, handle: SyntheticProgress) -> None:
        handles = self._handles.get(handle.request_id)
        if not handles:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            del self._handles[handle.request_id]
