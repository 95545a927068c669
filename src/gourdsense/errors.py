"""Exception hierarchy for GourdSense."""

from __future__ import annotations


class GourdSenseError(Exception):
    """Base class for all GourdSense errors."""


class CaptureError(GourdSenseError):
    """The camera failed to produce a frame."""


class ModelNotReadyError(GourdSenseError):
    """The local classifier was used before its model was loaded."""


class InferenceError(GourdSenseError):
    """The local classifier failed while running a prediction."""


class RemoteClassifierError(GourdSenseError):
    """Base class for failures of the cloud classifier."""


class RateLimitedError(RemoteClassifierError):
    """The cloud API rejected the request because of quota or rate limits."""


class RemoteNetworkError(RemoteClassifierError):
    """The cloud API could not be reached."""


class ResponseParseError(RemoteClassifierError):
    """Neither strict parsing nor field salvage recovered a prediction."""


class RemoteUnavailableError(RemoteClassifierError):
    """The cloud classifier is disabled, unconfigured, or refused the call."""


class NoFrameAvailableError(GourdSenseError):
    """No cached frame exists; the caller must capture a fresh one."""


class AnalysisFailedError(GourdSenseError):
    """An analysis could not produce any prediction."""


class InvalidTransitionError(GourdSenseError):
    """An analysis session was moved along an edge its state machine forbids."""
