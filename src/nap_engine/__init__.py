"""Smart-wake decision engine for timed naps.

Biometric samples stream into a :class:`NapSession`, which windows them,
classifies each window's sleep stage and decides when inside the trailing
wake window to wake the sleeper.  Post-nap feedback flows back through a
:class:`PersonalizationStore`.
"""

from nap_engine.personalization.store import PersonalizationStore
from nap_engine.session import NapSession

__version__ = "0.1.0"

__all__ = ["NapSession", "PersonalizationStore", "__version__"]
