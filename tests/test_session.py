"""Tests for the analysis state machine."""

from __future__ import annotations

import pytest
from fakes import remote_prediction

from gourdsense.engine.predictions import FinalPrediction, Source
from gourdsense.engine.session import AnalysisSession, AnalysisState, ValidationStatus
from gourdsense.errors import InvalidTransitionError
from gourdsense.ml.labels import Gender, GourdLabel, Variety


def _local() -> FinalPrediction:
    return FinalPrediction(
        variety=Variety.PATOLA,
        gender=Gender.FEMALE,
        confidence=88.0,
        raw_score=0.88,
        source=Source.LOCAL,
        is_rejected=False,
        label=GourdLabel.PATOLA_FEMALE,
    )


def _session_in(state: AnalysisState) -> AnalysisSession:
    path = {
        AnalysisState.LOCAL_DONE: [AnalysisState.LOCAL_RUNNING, AnalysisState.LOCAL_DONE],
        AnalysisState.DISAGREED: [
            AnalysisState.LOCAL_RUNNING,
            AnalysisState.LOCAL_DONE,
            AnalysisState.REMOTE_RUNNING,
            AnalysisState.DISAGREED,
        ],
    }[state]
    session = AnalysisSession()
    for step in path:
        session.advance(step)
    return session


class TestTransitions:
    def test_starts_idle(self) -> None:
        session = AnalysisSession()
        assert session.state is AnalysisState.IDLE
        assert session.final is None

    def test_cannot_skip_local(self) -> None:
        session = AnalysisSession()
        with pytest.raises(InvalidTransitionError):
            session.advance(AnalysisState.REMOTE_RUNNING)

    def test_local_only_finalize(self) -> None:
        session = _session_in(AnalysisState.LOCAL_DONE)
        session.finalize(_local(), ValidationStatus.LOCAL_ONLY)

        assert session.state is AnalysisState.FINALIZED
        assert session.validation_status is ValidationStatus.LOCAL_ONLY

    def test_finalized_is_terminal(self) -> None:
        session = _session_in(AnalysisState.LOCAL_DONE)
        session.finalize(_local(), ValidationStatus.LOCAL_ONLY)

        with pytest.raises(InvalidTransitionError):
            session.advance(AnalysisState.REMOTE_RUNNING)

    def test_awaiting_choice_cannot_be_finalized_twice(self) -> None:
        session = _session_in(AnalysisState.DISAGREED)
        session.await_user_choice()

        assert session.state is AnalysisState.AWAITING_USER_CHOICE
        assert session.validation_status is ValidationStatus.CONFLICT
        with pytest.raises(InvalidTransitionError):
            session.await_user_choice()


class TestChoose:
    def test_choice_resolves_conflict(self) -> None:
        session = _session_in(AnalysisState.DISAGREED)
        session.local = _local()
        session.remote = remote_prediction(Variety.UPO_SMOOTH, Gender.MALE, 0.93)
        session.await_user_choice()

        chosen = session.choose(Source.REMOTE)

        assert session.state is AnalysisState.FINALIZED
        assert chosen.source is Source.MANUAL
        assert chosen.variety is Variety.UPO_SMOOTH
        assert session.final == chosen
        assert session.validation_status is ValidationStatus.MANUAL_OVERRIDE

    def test_choice_overrides_final_result(self) -> None:
        session = _session_in(AnalysisState.LOCAL_DONE)
        session.local = _local()
        session.finalize(_local(), ValidationStatus.LOCAL_ONLY)

        chosen = session.choose(Source.LOCAL)

        assert chosen.source is Source.MANUAL
        assert chosen.raw_score == pytest.approx(0.88)
        assert session.validation_status is ValidationStatus.MANUAL_OVERRIDE

    def test_missing_candidate(self) -> None:
        session = _session_in(AnalysisState.LOCAL_DONE)
        session.local = _local()
        session.finalize(_local(), ValidationStatus.LOCAL_ONLY)

        with pytest.raises(ValueError, match="remote"):
            session.choose(Source.REMOTE)

    def test_choose_before_result(self) -> None:
        session = _session_in(AnalysisState.LOCAL_DONE)

        with pytest.raises(InvalidTransitionError):
            session.choose(Source.LOCAL)

    def test_candidates(self) -> None:
        session = AnalysisSession()
        session.local = _local()
        session.remote = remote_prediction()

        candidates = session.candidates
        assert set(candidates) == {Source.LOCAL, Source.REMOTE}
        assert candidates[Source.REMOTE].source is Source.REMOTE
