"""
Errors that are allowed to reach the user-facing layer.
Parse and provider failures never surface; they are logged and turned into
empty results where they happen.
"""


class BearWatchError(Exception):
    """Base class for service errors with a human-readable message."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingCredentialsError(BearWatchError):
    """No provider API key is configured, so a scan cannot run."""

    status_code = 400


class ScanTimeoutError(BearWatchError):
    """The combined provider search did not finish within the scan timeout."""

    status_code = 504


class VerificationUnavailableError(BearWatchError):
    """The primary image classifier could not be reached."""

    status_code = 503


class InvalidSubmissionError(BearWatchError):
    """A photo report failed the content-safety gate."""

    status_code = 422
