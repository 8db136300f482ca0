from __future__ import annotations


class MediaLibError(Exception):
    pass


class ClientError(MediaLibError):
    """Invalid request input. Surfaced verbatim to the HTTP layer."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = int(status)
        self.message = message


class NotFound(ClientError):
    def __init__(self, message: str = "Not found"):
        super().__init__(404, message)


class SoftIndexingError(MediaLibError):
    """A single file could not be indexed; it is left out of the tree."""


class ProbeError(SoftIndexingError):
    pass


class FatalIndexingError(MediaLibError):
    """A directory could not be read; the enclosing build is aborted."""


class ToolUnavailableError(MediaLibError):
    """The external media tool could not be launched at all."""


class TranscodeError(MediaLibError):
    """External tool failure while generating a derived asset.

    `stderr` is kept for the server log only and never returned to clients.
    """

    def __init__(self, message: str, *, stderr: str = "", returncode: int | None = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode
