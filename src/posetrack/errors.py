"""Exception types raised by posetrack."""

from __future__ import annotations


class PoseTrackError(Exception):
    """Base exception for all posetrack errors."""


class BackendUnavailable(PoseTrackError):
    """Raised when the accelerated backend is requested but not installed."""

    MESSAGE = (
        "Tracker has not been built with accelerated backend support "
        "(torch is not installed)."
    )

    def __init__(self, message: str = MESSAGE) -> None:
        super().__init__(message)


class TrackerNotInitialized(PoseTrackError):
    """Raised when tracking is requested before initial poses were set."""

    def __init__(self) -> None:
        super().__init__("Tracker must be initialized with initial poses before tracking")
