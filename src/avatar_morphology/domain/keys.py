"""Key canonicalization and renderer target-name translation.

Source payloads spell the same morphological parameter in many ways
(``BS_LOD0.BodyBigHips``, ``big_hips``, ``BigHips``, ``bighips``). Every consumer
downstream of the blender works on one canonical spelling; only the mesh boundary
ever sees renderer target names.
"""

from __future__ import annotations

import re
from enum import StrEnum
from functools import lru_cache
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

RENDERER_PREFIX: Final[str] = "BS_LOD0."

_FAMILY_PREFIX_RE: Final[re.Pattern[str]] = re.compile(r"^(?:Body|Anim|Face)(?=[A-Z0-9_\-\s])")
_SEPARATOR_RE: Final[re.Pattern[str]] = re.compile(r"[\s_\-]+")


class MorphKey(StrEnum):
    """Closed set of canonical shape keys known to the renderer rig."""

    # body
    PREGNANT = "pregnant"
    PEAR_FIGURE = "pearFigure"
    BIG_HIPS = "bigHips"
    ASS_LARGE = "assLarge"
    NARROW_WAIST = "narrowWaist"
    BODYBUILDER_SIZE = "bodybuilderSize"
    BODYBUILDER_DETAILS = "bodybuilderDetails"
    EMACIATED = "emaciated"
    SUPER_BREAST = "superBreast"
    BREASTS_SMALL = "breastsSmall"
    BREASTS_SAG = "breastsSag"
    ANIME_WAIST = "animeWaist"
    DOLL_BODY = "dollBody"
    NIPPLES = "nipples"
    ANIME_NECK = "animeNeck"
    ANIME_PROPORTION = "animeProportion"
    # animation
    EYES_CLOSED_L = "eyesClosedL"
    EYES_CLOSED_R = "eyesClosedR"
    # eyes and lashes
    FACE_LOWER_EYELASH_LENGTH = "FaceLowerEyelashLength"
    EYELASH_LENGTH = "eyelashLength"
    EYELASHES_SPECIAL = "eyelashesSpecial"
    EYES_SHAPE = "eyesShape"
    EYES_SPACING = "eyesSpacing"
    EYES_DOWN = "eyesDown"
    EYES_UP = "eyesUp"
    EYES_SPACING_WIDE = "eyesSpacingWide"
    # face
    FACE_JAW_WIDTH = "FaceJawWidth"
    FACE_CHEEK_FULLNESS = "FaceCheekFullness"
    FACE_CHEEKS_SIZE = "FaceCheeksSize"
    FACE_NOSE_SIZE = "FaceNoseSize"
    FACE_EYE_SIZE = "FaceEyeSize"
    FACE_LIP_THICKNESS = "FaceLipThickness"
    FACE_CHIN_LENGTH = "FaceChinLength"
    FACE_CHIN_SIZE = "FaceChinSize"
    FACE_FOREHEAD_HEIGHT = "FaceForeheadHeight"
    FACE_BROW_HEIGHT = "FaceBrowHeight"
    FACE_EAR_SIZE = "FaceEarSize"
    FACE_HEAD_SIZE = "FaceHeadSize"
    FACE_NARROW = "FaceNarrow"
    FACE_NOSE_ANGLE = "FaceNoseAngle"
    FACE_NOSE_HUMP = "FaceNoseHump"
    FACE_NOSE_NARROW = "FaceNoseNarrow"
    FACE_NOSE_SMALL = "FaceNoseSmall"
    FACE_NOSE_WIDE = "FaceNoseWide"
    FACE_ROUND_FACE = "FaceRoundFace"
    FACE_SYMMETRY = "FaceSymmetry"
    FACE_LONG_FACE = "FaceLongFace"
    FACE_CHEEKBONES = "FaceCheekbones"
    FACE_MOUTH_WIDTH = "FaceMouthWidth"
    FACE_MOUTH_SIZE = "FaceMouthSize"
    FACE_LIPS_TO_MEGALIPS = "FaceLipsToMegalips"
    FACE_NOSTRILS_FLARE = "FaceNostrilsFlare"


class LimbKey(StrEnum):
    """Semantic limb-mass scalars that drive skeletal scaling."""

    GATE = "gate"
    ARM_MASS = "armMass"
    FOREARM_MASS = "forearmMass"
    CALF_MASS = "calfMass"
    THIGH_MASS = "thighMass"
    TORSO_MASS = "torsoMass"
    NECK_MASS = "neckMass"
    HIP_MASS = "hipMass"
    SHOULDER_MASS = "shoulderMass"


BODY_KEYS: Final[tuple[MorphKey, ...]] = (
    MorphKey.PREGNANT,
    MorphKey.PEAR_FIGURE,
    MorphKey.BIG_HIPS,
    MorphKey.ASS_LARGE,
    MorphKey.NARROW_WAIST,
    MorphKey.BODYBUILDER_SIZE,
    MorphKey.BODYBUILDER_DETAILS,
    MorphKey.EMACIATED,
    MorphKey.SUPER_BREAST,
    MorphKey.BREASTS_SMALL,
    MorphKey.BREASTS_SAG,
    MorphKey.ANIME_WAIST,
    MorphKey.DOLL_BODY,
    MorphKey.NIPPLES,
    MorphKey.ANIME_NECK,
    MorphKey.ANIME_PROPORTION,
)
ANIM_KEYS: Final[tuple[MorphKey, ...]] = (MorphKey.EYES_CLOSED_L, MorphKey.EYES_CLOSED_R)
EYE_KEYS: Final[tuple[MorphKey, ...]] = (
    MorphKey.FACE_LOWER_EYELASH_LENGTH,
    MorphKey.EYELASH_LENGTH,
    MorphKey.EYELASHES_SPECIAL,
    MorphKey.EYES_SHAPE,
    MorphKey.EYES_SPACING,
    MorphKey.EYES_DOWN,
    MorphKey.EYES_UP,
    MorphKey.EYES_SPACING_WIDE,
)

# Optional on every mesh; always admitted by the policy builder.
SUPPLEMENTARY_FACE_KEYS: Final[tuple[MorphKey, ...]] = (*EYE_KEYS, *ANIM_KEYS)

# Historical misspellings seen in stored scans.
_LEGACY_SPELLINGS: Final[dict[str, str]] = {
    "liptickness": MorphKey.FACE_LIP_THICKNESS,
    "faceliptickness": MorphKey.FACE_LIP_THICKNESS,
    "eyelashspecial": MorphKey.EYELASHES_SPECIAL,
    "cheeksize": MorphKey.FACE_CHEEKS_SIZE,
}


def _capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def _build_target_table() -> dict[str, str]:
    table: dict[str, str] = {}
    for key in MorphKey:
        if key in BODY_KEYS:
            table[key] = f"{RENDERER_PREFIX}Body{_capitalize_first(key)}"
        elif key in ANIM_KEYS:
            table[key] = f"{RENDERER_PREFIX}Anim{_capitalize_first(key)}"
        elif key.startswith("Face"):
            table[key] = f"{RENDERER_PREFIX}{key}"
        else:
            table[key] = f"{RENDERER_PREFIX}Face{_capitalize_first(key)}"
    return table


def _build_corrections() -> dict[str, str]:
    corrections: dict[str, str] = {}
    for key in MorphKey:
        value = str(key)
        if value.startswith("Face"):
            bare = value[len("Face") :]
            corrections[bare.lower()] = value
            corrections[value.lower()] = value
        else:
            corrections[value.lower()] = value
    for key in LimbKey:
        corrections[str(key).lower()] = str(key)
    corrections.update({alias: str(key) for alias, key in _LEGACY_SPELLINGS.items()})
    return corrections


_TARGET_BY_KEY: Final[Mapping[str, str]] = MappingProxyType(_build_target_table())
_KEY_BY_TARGET: Final[Mapping[str, str]] = MappingProxyType(
    {target: key for key, target in _TARGET_BY_KEY.items()}
)
_CORRECTIONS: Final[Mapping[str, str]] = MappingProxyType(_build_corrections())


def _to_camel_case(text: str) -> str:
    parts = [part for part in _SEPARATOR_RE.split(text) if part]
    if not parts:
        return ""
    return parts[0] + "".join(_capitalize_first(part) for part in parts[1:])


@lru_cache(maxsize=4096)
def canonicalize(raw_key: str) -> str:
    """Return the canonical spelling for ``raw_key``.

    Total over strings: unknown keys come back in a best-effort camelCase form and
    are filtered later by the allow-list. Blank input yields ``""``.
    """

    if not isinstance(raw_key, str):
        return ""
    text = raw_key.strip()
    if text.startswith(RENDERER_PREFIX):
        text = text[len(RENDERER_PREFIX) :]
    text = _FAMILY_PREFIX_RE.sub("", text, count=1)
    text = _to_camel_case(text)
    if not text:
        return ""
    text = text[:1].lower() + text[1:]
    return _CORRECTIONS.get(text.lower(), text)


def to_target_name(key: str) -> str | None:
    """Renderer morph-target name for a canonical key, or ``None`` when unmapped."""

    return _TARGET_BY_KEY.get(key)


def from_target_name(name: str) -> str | None:
    """Canonical key for a renderer morph-target name, or ``None`` when unmapped."""

    return _KEY_BY_TARGET.get(name)


def canonicalize_mapping(values: Mapping[str, float]) -> dict[str, float]:
    """Canonicalize every key of ``values``; later spellings of one key win."""

    canonical: dict[str, float] = {}
    for raw_key, value in values.items():
        key = canonicalize(raw_key)
        if key:
            canonical[key] = value
    return canonical


__all__ = [
    "ANIM_KEYS",
    "BODY_KEYS",
    "EYE_KEYS",
    "RENDERER_PREFIX",
    "SUPPLEMENTARY_FACE_KEYS",
    "LimbKey",
    "MorphKey",
    "canonicalize",
    "canonicalize_mapping",
    "from_target_name",
    "to_target_name",
]
