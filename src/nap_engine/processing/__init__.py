"""Sample validation and sliding-window aggregation."""

from nap_engine.processing.validation import SampleBounds, SampleValidator
from nap_engine.processing.windows import SmoothingWindowAggregator, WindowAggregator

__all__ = ["SampleBounds", "SampleValidator", "SmoothingWindowAggregator", "WindowAggregator"]
