"""Tests for the verification pipeline."""

from __future__ import annotations

import pytest
from fakes import FakeClassifier, FakeRemote, distribution, make_image, remote_prediction

from gourdsense.engine.pipeline import VerificationPipeline
from gourdsense.engine.predictions import ContextHint, Source
from gourdsense.engine.session import AnalysisState, ValidationStatus
from gourdsense.errors import AnalysisFailedError, InferenceError, ModelNotReadyError, RateLimitedError
from gourdsense.ml.labels import Gender, GourdLabel, Variety


class TestLocalOnly:
    async def test_no_remote_configured(self) -> None:
        pipeline = VerificationPipeline(
            FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)),
            model_version="3.0.0-float-only",
        )
        session = await pipeline.run(make_image())

        assert session.state is AnalysisState.FINALIZED
        assert session.validation_status is ValidationStatus.LOCAL_ONLY
        assert session.final is session.local
        assert session.final is not None
        assert session.final.source is Source.LOCAL
        assert session.final.variety is Variety.PATOLA
        assert session.final.confidence == pytest.approx(88.0)
        assert session.final.model_version == "3.0.0-float-only"
        assert pipeline.remote_enabled is False

    async def test_unavailable_remote_is_skipped(self) -> None:
        remote = FakeRemote(remote_prediction(), available=False)
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)), remote)
        session = await pipeline.run(make_image())

        assert session.validation_status is ValidationStatus.LOCAL_ONLY
        assert remote.hints == []

    async def test_remote_failure_degrades_to_local(self) -> None:
        remote = FakeRemote(RateLimitedError("quota"))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.88)), remote)
        session = await pipeline.run(make_image())

        assert session.state is AnalysisState.FINALIZED
        assert session.validation_status is ValidationStatus.LOCAL_ONLY
        assert session.remote is None
        assert session.final is not None
        assert session.final.source is Source.LOCAL

    async def test_low_confidence_local_is_rejected(self) -> None:
        pipeline = VerificationPipeline(
            FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.50)),
            confidence_threshold=0.65,
        )
        session = await pipeline.run(make_image())

        assert session.final is not None
        assert session.final.is_rejected is True
        assert "Low confidence" in session.final.message


class TestVerification:
    async def test_agreement_is_validated(self) -> None:
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.92))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.85)), remote)
        session = await pipeline.run(make_image())

        assert session.state is AnalysisState.FINALIZED
        assert session.validation_status is ValidationStatus.VALIDATED
        assert session.comparison is not None
        assert session.comparison.agree is True
        assert session.final is not None
        assert session.final.source is Source.REMOTE
        assert session.final.raw_score == pytest.approx(0.92)

    async def test_local_verdict_seeds_remote(self) -> None:
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.92))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.85)), remote)
        await pipeline.run(make_image())

        hint = remote.hints[0]
        assert hint is not None
        assert hint.label is GourdLabel.PATOLA_FEMALE
        assert hint.confidence == pytest.approx(0.85)
        assert remote.images[0].startswith(b"\xff\xd8")

    async def test_explicit_hint_wins(self) -> None:
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.92))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.PATOLA_FEMALE, 0.85)), remote)
        explicit = ContextHint(label=GourdLabel.PATOLA_MALE, confidence=0.7)
        await pipeline.run(make_image(), explicit)

        assert remote.hints == [explicit]

    async def test_disagreement_is_arbitrated(self) -> None:
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.85))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.UPO_SMOOTH_MALE, 0.92)), remote)
        session = await pipeline.run(make_image())

        assert session.validation_status is ValidationStatus.ARBITRATED
        assert session.comparison is not None
        assert session.comparison.recommendation is Source.LOCAL
        assert session.final is not None
        assert session.final.variety is Variety.UPO_SMOOTH

    async def test_unresolved_conflict_waits_for_user(self) -> None:
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.FEMALE, 0.94))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.UPO_SMOOTH_MALE, 0.93)), remote)
        session = await pipeline.run(make_image())

        assert session.state is AnalysisState.AWAITING_USER_CHOICE
        assert session.validation_status is ValidationStatus.CONFLICT
        assert session.final is None

        chosen = session.choose(Source.LOCAL)
        assert chosen.source is Source.MANUAL
        assert chosen.variety is Variety.UPO_SMOOTH
        assert session.state is AnalysisState.FINALIZED

    async def test_local_reject_defers_to_remote(self) -> None:
        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.MALE, 0.8))
        pipeline = VerificationPipeline(FakeClassifier(distribution(GourdLabel.NOT_FLOWER, 0.9)), remote)
        session = await pipeline.run(make_image())

        assert session.validation_status is ValidationStatus.REMOTE_ONLY
        assert session.comparison is None
        assert session.final is not None
        assert session.final.source is Source.REMOTE
        assert session.final.variety is Variety.PATOLA


class TestLocalFailure:
    async def test_inference_error_is_terminal(self) -> None:
        pipeline = VerificationPipeline(FakeClassifier(InferenceError("session crashed")))

        with pytest.raises(AnalysisFailedError, match="session crashed"):
            await pipeline.run(make_image())

    async def test_model_not_ready_propagates(self) -> None:
        pipeline = VerificationPipeline(FakeClassifier(ModelNotReadyError("not loaded")))

        with pytest.raises(ModelNotReadyError):
            await pipeline.run(make_image())

    async def test_custom_runner(self) -> None:
        calls: list[str] = []

        async def runner(func, *args):  # type: ignore[no-untyped-def]
            calls.append(func.__name__)
            return func(*args)

        pipeline = VerificationPipeline(
            FakeClassifier(distribution(GourdLabel.PATOLA_MALE, 0.9)),
            runner=runner,
        )
        await pipeline.run(make_image())

        assert calls == ["predict"]

    async def test_jpeg_encoding_goes_through_runner(self) -> None:
        calls: list[str] = []

        async def runner(func, *args):  # type: ignore[no-untyped-def]
            calls.append(func.__name__)
            return func(*args)

        remote = FakeRemote(remote_prediction(Variety.PATOLA, Gender.MALE))
        pipeline = VerificationPipeline(
            FakeClassifier(distribution(GourdLabel.PATOLA_MALE, 0.9)),
            remote,
            runner=runner,
        )
        await pipeline.run(make_image())

        assert calls == ["predict", "encode_jpeg"]
        assert remote.images[0].startswith(b"\xff\xd8")
