"""State machine for a single user-initiated analysis.

    idle -> local_running -> local_done -> remote_running -> {agreed | disagreed}
         -> {finalized | awaiting_user_choice} -> finalized

``local_done`` may finalize directly when the remote classifier is absent or
fails. ``awaiting_user_choice`` only leaves through ``choose()``.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from gourdsense.engine.predictions import Source
from gourdsense.errors import InvalidTransitionError

if TYPE_CHECKING:
    from gourdsense.engine.predictions import ComparisonResult, FinalPrediction, RemotePrediction

logger = logging.getLogger(__name__)


class AnalysisState(StrEnum):
    IDLE = "idle"
    LOCAL_RUNNING = "local_running"
    LOCAL_DONE = "local_done"
    REMOTE_RUNNING = "remote_running"
    AGREED = "agreed"
    DISAGREED = "disagreed"
    AWAITING_USER_CHOICE = "awaiting_user_choice"
    FINALIZED = "finalized"


class ValidationStatus(StrEnum):
    LOCAL_ONLY = "local_only"
    VALIDATED = "validated"
    ARBITRATED = "arbitrated"
    CONFLICT = "conflict"
    REMOTE_ONLY = "remote_only"
    MANUAL_OVERRIDE = "manual_override"


_TRANSITIONS: dict[AnalysisState, frozenset[AnalysisState]] = {
    AnalysisState.IDLE: frozenset({AnalysisState.LOCAL_RUNNING}),
    AnalysisState.LOCAL_RUNNING: frozenset({AnalysisState.LOCAL_DONE}),
    AnalysisState.LOCAL_DONE: frozenset({AnalysisState.REMOTE_RUNNING, AnalysisState.FINALIZED}),
    AnalysisState.REMOTE_RUNNING: frozenset(
        {AnalysisState.AGREED, AnalysisState.DISAGREED, AnalysisState.FINALIZED}
    ),
    AnalysisState.AGREED: frozenset({AnalysisState.FINALIZED}),
    AnalysisState.DISAGREED: frozenset({AnalysisState.FINALIZED, AnalysisState.AWAITING_USER_CHOICE}),
    AnalysisState.AWAITING_USER_CHOICE: frozenset({AnalysisState.FINALIZED}),
    AnalysisState.FINALIZED: frozenset(),
}


class AnalysisSession:
    """Holds the local and remote verdicts of one analysis and its outcome."""

    def __init__(self) -> None:
        self.state = AnalysisState.IDLE
        self.local: FinalPrediction | None = None
        self.remote: RemotePrediction | None = None
        self.comparison: ComparisonResult | None = None
        self.final: FinalPrediction | None = None
        self.validation_status: ValidationStatus | None = None

    def advance(self, target: AnalysisState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Cannot move analysis from {self.state} to {target}")
        logger.debug("Analysis %s -> %s", self.state, target)
        self.state = target

    def finalize(self, final: FinalPrediction, status: ValidationStatus) -> None:
        self.advance(AnalysisState.FINALIZED)
        self.final = final
        self.validation_status = status

    def await_user_choice(self) -> None:
        self.advance(AnalysisState.AWAITING_USER_CHOICE)
        self.validation_status = ValidationStatus.CONFLICT

    @property
    def candidates(self) -> dict[Source, FinalPrediction]:
        """Predictions the user may pick from, keyed by their source."""
        options: dict[Source, FinalPrediction] = {}
        if self.local is not None:
            options[Source.LOCAL] = self.local
        if self.remote is not None:
            options[Source.REMOTE] = self.remote.to_final()
        return options

    def choose(self, source: Source) -> FinalPrediction:
        """Apply the user's explicit choice, producing a ``manual`` prediction.

        Resolves a pending conflict, or overrides an already final result.
        """
        if self.state not in (AnalysisState.AWAITING_USER_CHOICE, AnalysisState.FINALIZED):
            raise InvalidTransitionError(f"No result to choose from while {self.state}")
        chosen = self.candidates.get(source)
        if chosen is None:
            raise ValueError(f"No {source} prediction to choose")

        if self.state is AnalysisState.AWAITING_USER_CHOICE:
            self.advance(AnalysisState.FINALIZED)
        self.final = chosen.as_manual()
        self.validation_status = ValidationStatus.MANUAL_OVERRIDE
        logger.info("User chose the %s prediction", source)
        return self.final
