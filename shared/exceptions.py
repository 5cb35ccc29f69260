"""Error taxonomy for the Readwise sync and dashboard services."""

from typing import Optional


class ReadwiseError(Exception):
    """Base class for all errors raised by this application."""


class ConfigurationError(ReadwiseError):
    """No Readwise API token is configured."""


class AuthError(ReadwiseError):
    """The Readwise API token was rejected during explicit validation."""


class UpstreamError(ReadwiseError):
    """The Readwise API answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Server error (or transport failure) that outlasted the retry budget."""


class PermanentUpstreamError(UpstreamError):
    """Client-side rejection that retrying will not fix."""


class MalformedDocumentError(PermanentUpstreamError):
    """An upstream document could not be mapped to the local shape."""


class SyncInProgressError(ReadwiseError):
    """A sync is already running against the shared cursor."""
