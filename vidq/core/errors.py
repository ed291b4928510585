"""
Exception types raised by the task engine.

Failures inside a running task never escape the runner: they are turned into
the task's status plus a line in its text log. These classes exist so each
failure can be classified at the point it is caught.
"""


class VidqError(Exception):
    """Base exception for all application-specific errors."""


class InvalidRequestError(VidqError, ValueError):
    """Raised when an add-request is malformed (e.g. empty URL)."""


class TaskNotFoundError(VidqError, KeyError):
    """Raised when a control-plane call names an unknown task id."""


class InvalidTransitionError(VidqError):
    """Raised when a status write does not follow the task state machine."""


class TaskBusyError(VidqError):
    """
    Raised when a task is inside a non-interruptible stage (merging/trimming).
    The caller should try again once the stage has finished.
    """


class ResolutionError(VidqError):
    """Raised when a required executable (downloader or media toolkit) is missing."""


class LaunchError(VidqError):
    """Raised when the external process could not be started."""


class ProcessExitError(VidqError):
    """Raised when the downloader exits nonzero for a reason other than the limit sentinel."""

    def __init__(self, returncode: int, message: str = ""):
        self.returncode = returncode
        super().__init__(message or f"exit status {returncode}")


class TrimError(VidqError):
    """Raised when post-download trimming fails. The original download is kept."""


class PersistenceError(VidqError):
    """Raised when the durable store cannot be read or written."""


class MetadataError(VidqError):
    """Raised when media metadata cannot be extracted."""
