"""Reconcile the local and remote verdicts into one recommended source.

The disagreement rules are an ordered override table, not a weighted vote.
Earlier rules shadow later ones; thresholds are raw-score fractions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from gourdsense.engine.predictions import ComparisonResult, Source
from gourdsense.ml.labels import Gender, Variety

if TYPE_CHECKING:
    from collections.abc import Mapping

# Local variety -> remote varieties it is commonly mistaken for. Ampalaya
# and Patola blooms are both yellow; flower size separates them and a single
# close-up hides it from the remote model.
CONFUSABLE_VARIETIES: Mapping[Variety, frozenset[Variety]] = {
    Variety.AMPALAYA_BILOG: frozenset({Variety.PATOLA}),
}

SPECIES_GUARD_LOCAL_MIN: float = 0.80
FEMALE_GUARD_REMOTE_OVERRIDE: float = 0.98
LOCAL_OVERWHELMING: float = 0.98
REMOTE_OVERWHELMING: float = 0.95
LOCAL_LOW: float = 0.70
HIGH_CONFIDENCE: float = 0.90
LOCAL_NOT_VERY_HIGH: float = 0.80


class PredictionLike(Protocol):
    @property
    def variety(self) -> Variety | None: ...

    @property
    def gender(self) -> Gender | None: ...

    @property
    def raw_score(self) -> float: ...


def _resolve_disagreement(local: PredictionLike, remote: PredictionLike) -> Source:
    local_score = local.raw_score
    remote_score = remote.raw_score

    # Species asymmetry: a confident local call beats a known confusion.
    if (
        local.variety is not None
        and remote.variety in CONFUSABLE_VARIETIES.get(local.variety, frozenset())
        and local_score >= SPECIES_GUARD_LOCAL_MIN
    ):
        return Source.LOCAL

    # Female protection: the ovary is easy to miss in one frame.
    if local.gender == Gender.FEMALE and remote.gender == Gender.MALE:
        return Source.REMOTE if remote_score >= FEMALE_GUARD_REMOTE_OVERRIDE else Source.LOCAL

    if local_score >= LOCAL_OVERWHELMING:
        return Source.LOCAL
    if remote_score >= REMOTE_OVERWHELMING and local_score < LOCAL_LOW:
        return Source.REMOTE
    if local_score >= HIGH_CONFIDENCE and remote_score < HIGH_CONFIDENCE:
        return Source.LOCAL
    if remote_score >= HIGH_CONFIDENCE and local_score < LOCAL_NOT_VERY_HIGH:
        return Source.REMOTE
    return Source.MANUAL


def reconcile(local: PredictionLike, remote: PredictionLike) -> ComparisonResult:
    """Compare two verdicts and recommend which one to trust.

    Agreement picks the more confident side, ties going to remote.
    Disagreement runs the override table and may defer to the user.
    Pure and deterministic: no state is read or kept.
    """
    variety_match = local.variety == remote.variety
    gender_match = local.gender == remote.gender
    agree = variety_match and gender_match

    if agree:
        recommendation = Source.REMOTE if remote.raw_score >= local.raw_score else Source.LOCAL
        confidence = max(local.raw_score, remote.raw_score)
    else:
        recommendation = _resolve_disagreement(local, remote)
        confidence = (local.raw_score + remote.raw_score) / 2

    return ComparisonResult(
        variety_match=variety_match,
        gender_match=gender_match,
        agree=agree,
        confidence_gap=abs(local.raw_score - remote.raw_score),
        confidence=confidence,
        recommendation=recommendation,
    )
