"""Errors returned to callers of the download endpoint.

Every collaborator fault is translated into one of these before it leaves the
service; the message is the only part a caller ever sees.
"""


class DownloadError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(DownloadError):
    status_code = 401


class InvalidRequest(DownloadError):
    status_code = 400


class Forbidden(DownloadError):
    status_code = 403


class NotFound(DownloadError):
    status_code = 404


class InternalError(DownloadError):
    status_code = 500


class ConfigurationError(Exception):
    """A collaborator cannot be built from the current environment."""
