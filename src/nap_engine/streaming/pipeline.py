"""Async push adapter feeding live samples into nap sessions."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable

import structlog

from nap_engine.models import BiometricSample, WakeDecision
from nap_engine.session import NapSession

logger = structlog.get_logger(__name__)

SampleConsumer = Callable[[BiometricSample], Awaitable[None]]
DecisionCallback = Callable[[WakeDecision], Awaitable[None]]
Clock = Callable[[], datetime]


class SampleStream:
    """In-process async stream that buffers samples pushed by a device bridge
    and forwards them to registered consumers (typically nap sessions).

    Producers and sessions are decoupled by an :class:`asyncio.Queue`; a
    failing consumer is logged and skipped, the loop keeps running.

    Attached sessions are ticked with each sample's timestamp.  While no
    sample arrives they are ticked every *idle_tick_seconds* with *clock*,
    so a sensor dropout still ends in the deadline decision.
    """

    def __init__(
        self,
        maxsize: int = 10_000,
        clock: Clock = datetime.utcnow,
        idle_tick_seconds: float = 1.0,
    ) -> None:
        self._queue: asyncio.Queue[BiometricSample] = asyncio.Queue(maxsize=maxsize)
        self._consumers: list[SampleConsumer] = []
        self._sessions: list[tuple[NapSession, DecisionCallback | None]] = []
        self._clock = clock
        self._idle_tick = idle_tick_seconds
        self._running = False
        self._processed_total = 0

    # ── Configuration ─────────────────────────────────────────

    def add_consumer(self, fn: SampleConsumer) -> None:
        """Register an async callback that receives every sample."""
        self._consumers.append(fn)

    def attach_session(
        self,
        session: NapSession,
        on_decision: DecisionCallback | None = None,
    ) -> SampleConsumer:
        """Tick *session* with every sample; the sample time is the clock.

        *on_decision* is awaited once, with the session's wake decision.
        """

        async def _feed(sample: BiometricSample) -> None:
            await self._tick(session, on_decision, sample.timestamp, [sample])

        _feed.__qualname__ = f"session[{session.context.session_id}]"
        self._sessions.append((session, on_decision))
        self.add_consumer(_feed)
        return _feed

    # ── Producer side ─────────────────────────────────────────

    async def publish(self, sample: BiometricSample) -> None:
        """Enqueue a sample for downstream processing."""
        await self._queue.put(sample)

    async def publish_batch(self, samples: list[BiometricSample]) -> None:
        for s in samples:
            await self._queue.put(s)

    # ── Consumer loop ─────────────────────────────────────────

    async def start(self) -> None:
        """Start the consumer loop (run as a background task)."""
        self._running = True
        logger.info("sample_stream.started", consumers=len(self._consumers))

        last_stats_time = time.monotonic()

        while self._running:
            try:
                sample = await asyncio.wait_for(self._queue.get(), timeout=self._idle_tick)
            except asyncio.TimeoutError:
                await self._tick_idle_sessions()
                continue

            for consumer in self._consumers:
                try:
                    await consumer(sample)
                except Exception as exc:
                    logger.error(
                        "sample_stream.consumer_error",
                        consumer=consumer.__qualname__,
                        error=str(exc),
                    )

            self._processed_total += 1
            self._queue.task_done()

            now = time.monotonic()
            if now - last_stats_time >= 60:
                logger.info(
                    "sample_stream.stats",
                    processed_total=self._processed_total,
                    queue_pending=self._queue.qsize(),
                )
                last_stats_time = now

    async def join(self) -> None:
        """Wait until every published sample has been consumed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Gracefully stop the consumer loop."""
        self._running = False
        logger.info("sample_stream.stopped", processed_total=self._processed_total)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def processed_total(self) -> int:
        return self._processed_total

    # ── Internals ────────────────────────────────────────────

    async def _tick(
        self,
        session: NapSession,
        on_decision: DecisionCallback | None,
        now: datetime,
        samples: list[BiometricSample],
    ) -> None:
        if session.is_finished:
            return
        result = session.tick(now, samples)
        if result.decision is not None and on_decision is not None:
            await on_decision(result.decision)

    async def _tick_idle_sessions(self) -> None:
        now = self._clock()
        for session, on_decision in self._sessions:
            try:
                await self._tick(session, on_decision, now, [])
            except Exception as exc:
                logger.error(
                    "sample_stream.idle_tick_error",
                    session_id=session.context.session_id,
                    error=str(exc),
                )
