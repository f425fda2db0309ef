"""Sliding-window aggregation of the biometric sample stream.

Samples are buffered in arrival order and sliced into fixed-duration,
overlapping windows.  A window is emitted once the newest buffered sample
has reached its end, so the aggregator can be drained after every tick
without ever producing a partially-filled trailing window.

Window statistics are computed by :meth:`BiometricWindow.from_samples`;
a statistic with no contributing samples is ``None``.
"""

from __future__ import annotations

import statistics
from bisect import bisect_left
from datetime import datetime, timedelta
from typing import Sequence

import structlog

from nap_engine.config import Settings
from nap_engine.models import BiometricSample, BiometricWindow

logger = structlog.get_logger(__name__)

_STAT_FIELDS = ("avg_heart_rate", "hrv_dispersion", "avg_motion", "motion_dispersion")


# ── Pure window construction ─────────────────────────────────


def build_windows(
    samples: Sequence[BiometricSample],
    first_start: datetime,
    duration: timedelta,
    step: timedelta,
    until: datetime,
) -> tuple[list[BiometricWindow], datetime]:
    """Slice chronologically sorted *samples* into windows.

    Parameters
    ----------
    samples
        Samples sorted by non-decreasing timestamp.
    first_start
        Start of the first candidate window.
    duration
        Window length; every emitted window spans exactly this.
    step
        Offset between consecutive window starts (``duration × (1 − overlap)``).
    until
        Only windows whose end is ``<= until`` are produced.

    Returns
    -------
    tuple
        ``(windows, next_start)`` where *next_start* is the start of the
        first window that could not be completed yet.  Windows with no
        samples are skipped but still advance the cursor.
    """
    timestamps = [s.timestamp for s in samples]
    windows: list[BiometricWindow] = []
    start = first_start
    while start + duration <= until:
        end = start + duration
        lo = bisect_left(timestamps, start)
        hi = bisect_left(timestamps, end)
        if hi > lo:
            windows.append(BiometricWindow.from_samples(start, end, samples[lo:hi]))
        start += step
    return windows, start


# ── Aggregators ───────────────────────────────────────────────


class WindowAggregator:
    """Buffer validated samples and drain completed windows.

    Parameters
    ----------
    window_duration
        Window length as a ``timedelta`` or seconds (default 30 s).
    overlap_ratio
        Fraction of a window shared with the next one, in ``[0, 1)``.
    """

    def __init__(
        self,
        window_duration: timedelta | float = 30.0,
        overlap_ratio: float = 0.5,
    ) -> None:
        if not isinstance(window_duration, timedelta):
            window_duration = timedelta(seconds=window_duration)
        if window_duration <= timedelta(0):
            raise ValueError("window_duration must be positive")
        if not 0.0 <= overlap_ratio < 1.0:
            raise ValueError("overlap_ratio must be in [0, 1)")

        self._duration = window_duration
        self._overlap = overlap_ratio
        self._step = window_duration * (1.0 - overlap_ratio)
        self._buffer: list[BiometricSample] = []
        self._next_start: datetime | None = None
        self._latest: datetime | None = None
        self.out_of_order_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> WindowAggregator:
        return cls(
            window_duration=settings.window_duration_seconds,
            overlap_ratio=settings.window_overlap_ratio,
        )

    @property
    def window_duration(self) -> timedelta:
        return self._duration

    @property
    def overlap_ratio(self) -> float:
        return self._overlap

    @property
    def pending_samples(self) -> int:
        return len(self._buffer)

    # ── Producer side ─────────────────────────────────────────

    def add_sample(self, sample: BiometricSample) -> bool:
        """Buffer *sample*; returns ``False`` if it arrived out of order."""
        if self._latest is not None and sample.timestamp < self._latest:
            self.out_of_order_count += 1
            logger.info(
                "windows.out_of_order_sample",
                timestamp=sample.timestamp.isoformat(),
                latest=self._latest.isoformat(),
            )
            return False
        if self._next_start is None:
            self._next_start = sample.timestamp
        self._buffer.append(sample)
        self._latest = sample.timestamp
        return True

    # ── Consumer side ─────────────────────────────────────────

    def drain_windows(self) -> list[BiometricWindow]:
        """Return every newly completed window in ascending start order."""
        if not self._buffer or self._next_start is None or self._latest is None:
            return []
        windows, self._next_start = build_windows(
            self._buffer, self._next_start, self._duration, self._step, self._latest
        )
        self._evict()
        return windows

    def _evict(self) -> None:
        """Drop samples that no future window can contain."""
        assert self._next_start is not None
        cut = bisect_left([s.timestamp for s in self._buffer], self._next_start)
        if cut:
            del self._buffer[:cut]


class SmoothingWindowAggregator(WindowAggregator):
    """Window aggregator that can also de-spike the aggregate series.

    :meth:`drain_smoothed` smooths across drains: a window is released only
    once the ``span // 2`` windows after it exist, so the output is the same
    however the samples were batched.
    """

    def __init__(
        self,
        window_duration: timedelta | float = 30.0,
        overlap_ratio: float = 0.5,
        span: int = 3,
    ) -> None:
        super().__init__(window_duration, overlap_ratio)
        if span < 1:
            raise ValueError("span must be >= 1")
        self.span = span
        self._raw: list[BiometricWindow] = []
        self._cursor = 0  # index in _raw of the next window to release

    @classmethod
    def from_settings(cls, settings: Settings) -> SmoothingWindowAggregator:
        return cls(
            window_duration=settings.window_duration_seconds,
            overlap_ratio=settings.window_overlap_ratio,
            span=settings.smoothing_span,
        )

    @property
    def held_windows(self) -> int:
        """Completed windows waiting for their trailing neighbours."""
        return len(self._raw) - self._cursor

    def drain_smoothed(self) -> list[BiometricWindow]:
        """Drain completed windows, smoothed over the running series.

        With ``span <= 1`` this is :meth:`drain_windows`.
        """
        windows = self.drain_windows()
        if self.span <= 1:
            return windows

        half = self.span // 2
        self._raw.extend(windows)
        released: list[BiometricWindow] = []
        while self._cursor < len(self._raw) - half:
            released.append(_smooth_at(self._raw, self._cursor, half))
            self._cursor += 1

        # keep only the leading neighbours the next release still needs
        drop = max(0, self._cursor - half)
        if drop:
            del self._raw[:drop]
            self._cursor -= drop
        return released

    def smooth(
        self,
        windows: Sequence[BiometricWindow],
        span: int | None = None,
    ) -> list[BiometricWindow]:
        """Centered moving average of every aggregate statistic.

        The neighbourhood is truncated at the series edges and ``None``
        values are ignored.  A statistic that is ``None`` in a window stays
        ``None``: smoothing never invents data.
        """
        span = self.span if span is None else span
        if span <= 1 or len(windows) < 2:
            return list(windows)
        return [_smooth_at(windows, i, span // 2) for i in range(len(windows))]


def _smooth_at(windows: Sequence[BiometricWindow], i: int, half: int) -> BiometricWindow:
    window = windows[i]
    neighbourhood = windows[max(0, i - half): i + half + 1]
    updates: dict[str, float | None] = {}
    for name in _STAT_FIELDS:
        if getattr(window, name) is None:
            updates[name] = None
            continue
        values = [getattr(w, name) for w in neighbourhood if getattr(w, name) is not None]
        updates[name] = statistics.fmean(values)
    return window.model_copy(update=updates)
