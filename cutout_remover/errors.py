"""Exception types raised by the background removal engine."""


class CutoutError(Exception):
    """Base class for every error raised by cutout_remover."""


class InvalidInputError(CutoutError, ValueError):
    """Bad image dimensions, mismatched mask size or malformed settings."""


class ProcessingError(CutoutError, RuntimeError):
    """A pipeline stage failed; no partial result is returned."""

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        self.stage = stage


class ProcessingCancelled(CutoutError):
    """The caller cancelled the run before it completed."""


class SessionBusyError(CutoutError):
    """Manual edits were attempted while automatic processing is running."""
