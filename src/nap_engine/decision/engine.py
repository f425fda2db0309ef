"""Wake decision engine — one state machine per nap session.

States advance one way only::

    SAMPLING → SEARCHING_WINDOW → DECIDING → WOKEN

``SAMPLING`` lasts until the wake window opens.  Inside the window every
stage record is screened for a wake candidate (``SEARCHING_WINDOW``); once a
candidate exists the engine is ``DECIDING``.  The first decision returned by
:meth:`WakeDecisionEngine.should_wake` is terminal (``WOKEN``).

Whatever the state, any ``now`` at or past the target end time yields a
``TARGET_TIME_REACHED`` decision with full confidence.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from functools import cmp_to_key

import structlog

from nap_engine.config import Settings
from nap_engine.models import (
    BiometricWindow,
    OptimalWakeTime,
    PersonalizedRecommendation,
    SessionContext,
    SleepStage,
    SleepStageRecord,
    WakeDecision,
    WakeReason,
)
from nap_engine.personalization.store import PersonalizationStore

logger = structlog.get_logger(__name__)

TIE_BREAK_MARGIN = 0.1
FINAL_CALL_CONFIDENCE = 0.8
DEADLINE_CONFIDENCE = 1.0


class EngineState(str, Enum):
    SAMPLING = "sampling"
    SEARCHING_WINDOW = "searching_window"
    DECIDING = "deciding"
    WOKEN = "woken"


_CANDIDATE_REASONS = {
    SleepStage.LIGHT: WakeReason.LIGHT_SLEEP_DETECTED,
    SleepStage.AWAKE: WakeReason.MOTION_INCREASE,
}


def _compare_candidates(a: OptimalWakeTime, b: OptimalWakeTime) -> int:
    """Higher confidence wins by a clear margin, otherwise the later one."""
    if abs(a.confidence - b.confidence) > TIE_BREAK_MARGIN:
        return -1 if a.confidence > b.confidence else 1
    if a.timestamp != b.timestamp:
        return -1 if a.timestamp > b.timestamp else 1
    return 0


def recommendation_reasoning(condition_score: float, minutes_remaining: float) -> str:
    if condition_score > 0.7:
        return (
            "Great time to wake up! Your current biometrics match your historical "
            "preferences for refreshing naps."
        )
    if condition_score > 0.5:
        return (
            "Good wake window. Your body shows signs that align with previous "
            "successful wake times."
        )
    if minutes_remaining < 5:
        return "Close to target time. Based on your patterns, waking now would be acceptable."
    return (
        "Consider waiting a bit longer. Your current state doesn't match your "
        "typical preferences for optimal waking."
    )


class WakeDecisionEngine:
    """Collect wake candidates and decide when to wake.

    Parameters
    ----------
    context : SessionContext
        The session being supervised.
    personalization : PersonalizationStore | None
        Store consulted for timing preference and condition scoring.
    candidate_lead_seconds : float
        How far from ``now`` a candidate may lie and still be acted upon.
    final_call_seconds : float
        Remaining time at which the engine wakes without a candidate.
    """

    def __init__(
        self,
        context: SessionContext,
        personalization: PersonalizationStore | None = None,
        candidate_lead_seconds: float = 120.0,
        final_call_seconds: float = 60.0,
    ) -> None:
        self.context = context
        self._personalization = personalization
        self._lead = timedelta(seconds=candidate_lead_seconds)
        self._final_call = timedelta(seconds=final_call_seconds)
        self._state = EngineState.SAMPLING
        self._candidates: list[OptimalWakeTime] = []
        self._last_stage = SleepStage.UNKNOWN
        self.decision: WakeDecision | None = None

    @classmethod
    def from_settings(
        cls,
        context: SessionContext,
        settings: Settings,
        personalization: PersonalizationStore | None = None,
    ) -> WakeDecisionEngine:
        return cls(
            context,
            personalization=personalization,
            candidate_lead_seconds=settings.candidate_lead_seconds,
            final_call_seconds=settings.final_call_seconds,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def candidates(self) -> list[OptimalWakeTime]:
        return list(self._candidates)

    # ── State transitions ─────────────────────────────────────

    def advance(self, now: datetime) -> EngineState:
        """Open the wake window once *now* has reached it."""
        if self._state is EngineState.SAMPLING and now >= self.context.wake_window_start:
            self._state = EngineState.SEARCHING_WINDOW
            logger.info(
                "wake_engine.window_opened",
                session_id=self.context.session_id,
                window_start=self.context.wake_window_start.isoformat(),
            )
        return self._state

    def observe(self, record: SleepStageRecord) -> OptimalWakeTime | None:
        """Screen one stage record; returns the candidate it produced, if any."""
        self._last_stage = record.stage
        self.advance(record.timestamp)
        if self._state is EngineState.WOKEN or self._state is EngineState.SAMPLING:
            return None

        ctx = self.context
        if not (ctx.wake_window_start <= record.timestamp <= ctx.target_end_time):
            return None
        if not record.stage.is_optimal_for_waking:
            return None
        if record.confidence < ctx.confidence_threshold:
            return None

        confidence = record.confidence
        if self._personalization is not None:
            confidence = self._personalization.adjust_timing(
                confidence, record.timestamp, ctx.target_end_time
            )
        candidate = OptimalWakeTime(
            timestamp=record.timestamp,
            confidence=confidence,
            stage=record.stage,
            reason=_CANDIDATE_REASONS[record.stage],
        )
        self._candidates.append(candidate)
        self._state = EngineState.DECIDING
        logger.debug(
            "wake_engine.candidate",
            session_id=ctx.session_id,
            stage=record.stage.value,
            confidence=round(confidence, 3),
            timestamp=record.timestamp.isoformat(),
        )
        return candidate

    # ── Decisions ─────────────────────────────────────────────

    def best_candidate(self, now: datetime) -> OptimalWakeTime | None:
        """The best candidate within the lead interval around *now*."""
        fresh = [c for c in self._candidates if abs(c.timestamp - now) <= self._lead]
        if not fresh:
            return None
        return sorted(fresh, key=cmp_to_key(_compare_candidates))[0]

    def should_wake(self, now: datetime) -> WakeDecision | None:
        """Return the wake decision for *now*, or ``None`` to keep sleeping."""
        ctx = self.context
        if now >= ctx.target_end_time:
            decision = WakeDecision(
                timestamp=now,
                stage=self._last_stage,
                reason=WakeReason.TARGET_TIME_REACHED,
                confidence=DEADLINE_CONFIDENCE,
            )
            if self.decision is None:
                self._finish(decision)
            return decision

        if self.decision is not None:
            return self.decision

        if self.advance(now) is not EngineState.SAMPLING:
            best = self.best_candidate(now)
            if best is not None and best.confidence >= ctx.confidence_threshold:
                return self._finish(
                    WakeDecision(
                        timestamp=now,
                        stage=best.stage,
                        reason=best.reason,
                        confidence=best.confidence,
                    )
                )

        # The final call applies even when the wake window is shorter than it.
        if ctx.target_end_time - now <= self._final_call:
            return self._finish(
                WakeDecision(
                    timestamp=now,
                    stage=self._last_stage,
                    reason=WakeReason.TARGET_TIME_REACHED,
                    confidence=FINAL_CALL_CONFIDENCE,
                )
            )
        return None

    def request_wake(self, now: datetime) -> WakeDecision:
        """Manual wake; terminal unless a decision was already made."""
        if self.decision is not None:
            return self.decision
        return self._finish(
            WakeDecision(
                timestamp=now,
                stage=self._last_stage,
                reason=WakeReason.USER_REQUEST,
                confidence=DEADLINE_CONFIDENCE,
            )
        )

    def _finish(self, decision: WakeDecision) -> WakeDecision:
        self.decision = decision
        self._state = EngineState.WOKEN
        logger.info(
            "wake_engine.decision",
            session_id=self.context.session_id,
            reason=decision.reason.value,
            stage=decision.stage.value,
            confidence=round(decision.confidence, 3),
            timestamp=decision.timestamp.isoformat(),
        )
        return decision

    # ── Advisory ──────────────────────────────────────────────

    def get_personalized_recommendation(
        self,
        window: BiometricWindow,
        time_in_session: timedelta,
        now: datetime,
    ) -> PersonalizedRecommendation:
        """Suggest a wake time from the user's history; never changes state."""
        ctx = self.context
        store = self._personalization
        score = store.condition_score(window) if store is not None else 0.5
        offset = store.preferred_wake_offset() if store is not None else timedelta(0)

        recommended = ctx.target_end_time + offset
        recommended = max(ctx.wake_window_start, min(ctx.target_end_time, recommended))

        minutes_remaining = (ctx.target_end_time - now).total_seconds() / 60.0
        logger.debug(
            "wake_engine.recommendation",
            session_id=ctx.session_id,
            minutes_in=round(time_in_session.total_seconds() / 60.0, 1),
            score=round(score, 3),
        )
        return PersonalizedRecommendation(
            recommended_wake_time=recommended,
            confidence_score=score,
            reasoning=recommendation_reasoning(score, minutes_remaining),
        )
