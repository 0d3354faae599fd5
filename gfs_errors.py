from __future__ import annotations


class AonuiError(RuntimeError):
    """Base class for GFS sync and reorder failures."""


class NetworkFailure(AonuiError):
    """Raised when a request fails at the connection or HTTP status level."""


class RetriesExhausted(NetworkFailure):
    """Raised when every attempt of a retrying fetch has failed."""

    def __init__(self, url: str, attempts: int, last_error: object = None) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Fetch of {url} failed after {attempts} attempt(s): {last_error}")


class FetchTimeout(NetworkFailure):
    """Raised when a record transfer does not finish before its deadline."""


class MalformedInventory(AonuiError):
    """Raised when a short inventory cannot be parsed."""


class InvalidDateField(MalformedInventory):
    """Raised when an inventory date field is not of the form d=YYYYMMDDHH."""


class UnexpectedSubrecord(MalformedInventory):
    """Raised when a sub-record appears before any record it could belong to."""


class MissingLength(AonuiError):
    """Raised when the server does not report a dataset's Content-Length."""


class TooFewDatasets(AonuiError):
    """Raised when a run lists fewer datasets than its source requires."""

    def __init__(self, identifier: str, found: int, required: int) -> None:
        self.identifier = identifier
        self.found = found
        self.required = required
        super().__init__(f"Run {identifier} has {found} dataset(s), expecting at least {required}")


class NoRunsDownloaded(AonuiError):
    """Raised when no candidate run could be downloaded."""


class Wgrib2Error(AonuiError):
    """Raised when the wgrib2 executable is missing or exits with an error."""


class ReorderError(AonuiError):
    """Raised when records cannot be copied out of a composite file."""
