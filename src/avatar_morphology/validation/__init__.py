"""Allow-listing, banning and clamping of resolved parameters."""

from avatar_morphology.validation.clamper import (
    FEMININE_FANTASY_KEYS,
    REALISTIC_SOFT_CAP,
    AvatarStyle,
    StructuralEnvelope,
    Validator,
    parse_envelope,
)

__all__ = [
    "FEMININE_FANTASY_KEYS",
    "REALISTIC_SOFT_CAP",
    "AvatarStyle",
    "StructuralEnvelope",
    "Validator",
    "parse_envelope",
]
