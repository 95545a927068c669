"""Label vocabulary shared by the local and remote classifiers.

Both classifiers speak about the same seven classes, but spell them
differently: the multi-class model uses ``patola_female``, the Teachable
Machine export uses ``Patola Female`` and the remote model reports a variety
code plus a separate gender. Everything is normalized to ``GourdLabel``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum


class Variety(StrEnum):
    AMPALAYA_BILOG = "Ampalaya Bilog"
    PATOLA = "Patola"
    UPO_SMOOTH = "Upo (Smooth)"


class Gender(StrEnum):
    MALE = "male"
    FEMALE = "female"
    UNKNOWN = "unknown"


class GourdLabel(StrEnum):
    AMPALAYA_BILOG_FEMALE = "ampalaya_bilog_female"
    AMPALAYA_BILOG_MALE = "ampalaya_bilog_male"
    PATOLA_FEMALE = "patola_female"
    PATOLA_MALE = "patola_male"
    UPO_SMOOTH_FEMALE = "upo_smooth_female"
    UPO_SMOOTH_MALE = "upo_smooth_male"
    NOT_FLOWER = "not_flower"


REJECT_LABEL = GourdLabel.NOT_FLOWER

VARIETY_CODES: dict[str, Variety] = {
    "ampalaya_bilog": Variety.AMPALAYA_BILOG,
    "patola": Variety.PATOLA,
    "upo_smooth": Variety.UPO_SMOOTH,
}

_REJECT_ALIASES = frozenset({"not_flower", "notflower", "non_flower", "reject", "background"})


@dataclass(frozen=True)
class LabelTags:
    """Variety / gender tags derived from a label."""

    variety: Variety | None
    gender: Gender
    is_flower: bool


_UNKNOWN_TAGS = LabelTags(variety=None, gender=Gender.UNKNOWN, is_flower=False)

_LABEL_TAGS: dict[GourdLabel, LabelTags] = {
    GourdLabel.AMPALAYA_BILOG_FEMALE: LabelTags(Variety.AMPALAYA_BILOG, Gender.FEMALE, True),
    GourdLabel.AMPALAYA_BILOG_MALE: LabelTags(Variety.AMPALAYA_BILOG, Gender.MALE, True),
    GourdLabel.PATOLA_FEMALE: LabelTags(Variety.PATOLA, Gender.FEMALE, True),
    GourdLabel.PATOLA_MALE: LabelTags(Variety.PATOLA, Gender.MALE, True),
    GourdLabel.UPO_SMOOTH_FEMALE: LabelTags(Variety.UPO_SMOOTH, Gender.FEMALE, True),
    GourdLabel.UPO_SMOOTH_MALE: LabelTags(Variety.UPO_SMOOTH, Gender.MALE, True),
    GourdLabel.NOT_FLOWER: _UNKNOWN_TAGS,
}


def _slug(raw: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", raw.strip().lower()).strip("_")


def normalize_label(raw: str | None) -> GourdLabel | None:
    """Map any known spelling of a class to its ``GourdLabel``.

    Returns None for labels outside the vocabulary.
    """
    if not raw:
        return None
    slug = _slug(raw)
    if slug in _REJECT_ALIASES:
        return GourdLabel.NOT_FLOWER
    try:
        return GourdLabel(slug)
    except ValueError:
        return None


def label_for(variety: Variety | None, gender: Gender | None) -> GourdLabel | None:
    """Compose a label from separate tags, None if the pair has no class."""
    if variety is None:
        return None
    for label, tags in _LABEL_TAGS.items():
        if tags.variety is variety and tags.gender is gender:
            return label
    return None


def tags_for(label: str | None) -> LabelTags:
    """Total mapping from any label spelling to variety / gender tags."""
    normalized = normalize_label(label)
    if normalized is None:
        return _UNKNOWN_TAGS
    return _LABEL_TAGS[normalized]


def is_reject(label: str | None) -> bool:
    return normalize_label(label) is REJECT_LABEL


def variety_from_code(code: str | None) -> Variety | None:
    """Resolve a remote variety code or display name, None for reject / unknown."""
    if not code:
        return None
    slug = _slug(code)
    if slug in VARIETY_CODES:
        return VARIETY_CODES[slug]
    for variety in Variety:
        if _slug(variety.value) == slug:
            return variety
    return None


def gender_from_text(text: str | None) -> Gender:
    if not text:
        return Gender.UNKNOWN
    try:
        return Gender(text.strip().lower())
    except ValueError:
        return Gender.UNKNOWN
