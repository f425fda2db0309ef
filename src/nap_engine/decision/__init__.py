"""Wake decision sub-package."""

from nap_engine.decision.engine import EngineState, WakeDecisionEngine

__all__ = ["EngineState", "WakeDecisionEngine"]
