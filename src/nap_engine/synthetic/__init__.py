"""Synthetic nap data: generation, analysis and export."""

from nap_engine.synthetic.generator import SyntheticSessionGenerator, UserArchetype, random_archetype

__all__ = ["SyntheticSessionGenerator", "UserArchetype", "random_archetype"]
