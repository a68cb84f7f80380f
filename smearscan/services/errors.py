"""
Error taxonomy for the diagnostic pipeline.

Only DecodeError is meant to cross the pipeline boundary. Every other
error is caught by the component that owns the fallback for it and turned
into a flagged, lower-confidence result.
"""


class SmearScanError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(SmearScanError):
    """The supplied payload cannot be decoded as an image."""


class ModelLoadError(SmearScanError):
    """The classifier artifact is missing, corrupt, or has the wrong shape."""


class ShapeMismatchError(SmearScanError):
    """A tensor handed to the classifier does not have the expected shape."""

    def __init__(self, expected: tuple, actual: tuple):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(f"Expected tensor shape {self.expected}, got {self.actual}")


class RemoteInferenceError(SmearScanError):
    """Transport, authentication, or configuration failure talking to the remote model."""


class ResponseParseError(SmearScanError):
    """The remote model answered, but not with a usable JSON object."""


class VerificationError(SmearScanError):
    """The remote verification stage failed; the cause is chained."""


class LabPredictionError(SmearScanError):
    """The remote lab-risk prediction failed; the cause is chained."""
