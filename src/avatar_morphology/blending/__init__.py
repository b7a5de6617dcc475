"""Archetype candidate blending."""

from avatar_morphology.blending.blender import (
    NEUTRAL_LIMB_MASS,
    BlendSettings,
    Blender,
    EmptyInputError,
)

__all__ = ["NEUTRAL_LIMB_MASS", "BlendSettings", "Blender", "EmptyInputError"]
