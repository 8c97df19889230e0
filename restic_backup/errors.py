"""Errors raised for failed restic invocations, and their classification."""

from typing import Optional


class ResticError(Exception):
    """A restic failure with a user-facing message and the raw output."""

    def __init__(self, message: str, raw_output: str = ''):
        super().__init__(message)
        self.message = message
        self.raw_output = raw_output


class PermissionDeniedError(ResticError):
    """restic could not read the archive directory."""


class PathNotFoundError(ResticError):
    """None of the source paths exist."""


class UnclassifiedError(ResticError):
    """Any other failure; the raw output is shown as-is."""


class ResticCommandError(ResticError):
    """A one-shot restic command exited with a failure status."""

    def __init__(self, message: str, raw_output: str = '', returncode: Optional[int] = None,
                 cause: Optional[ResticError] = None):
        super().__init__(message, raw_output)
        self.returncode = returncode
        self.cause = cause


class ResticNotFoundError(ResticError):
    """The restic executable is missing."""


class RepositoryInitError(ResticError):
    """The repository could not be checked or initialized."""


MESSAGES = {
    'permission_denied': "Permission denied while reading the archive, run the program as administrator",
    'path_not_found': "The archive directory does not exist, please check the path",
    'unclassified': "Backup failed: {output}",
}

_ACCESS_DENIED = "Access is denied"
_SKIPPED_MISSING = "does not exist, skipping"
_ALL_SOURCES_MISSING = "all source directories/files do not exist"


def classify_error(raw_output: str) -> ResticError:
    """Map the output of a failed run to a user-facing error.

    Patterns are checked in priority order; the classifier never retries
    anything itself.
    """
    if _ACCESS_DENIED in raw_output:
        return PermissionDeniedError(MESSAGES['permission_denied'], raw_output)

    if _SKIPPED_MISSING in raw_output and _ALL_SOURCES_MISSING in raw_output:
        return PathNotFoundError(MESSAGES['path_not_found'], raw_output)

    return UnclassifiedError(MESSAGES['unclassified'].format(output=raw_output), raw_output)
