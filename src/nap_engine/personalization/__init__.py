"""Personalization sub-package — feedback history and derived adjustments."""

from nap_engine.personalization.store import (
    FeedbackPersistenceError,
    FeedbackSink,
    InMemoryFeedbackSink,
    PersonalizationStore,
)

__all__ = [
    "FeedbackPersistenceError",
    "FeedbackSink",
    "InMemoryFeedbackSink",
    "PersonalizationStore",
]
