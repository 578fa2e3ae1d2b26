"""Experiment service errors.

Services raise these synchronously; the HTTP layer maps them to responses
via ``status_code``.
"""


class ExperimentError(Exception):
    """Base class for experiment engine errors."""

    code = "INTERNAL"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ExperimentError):
    """Malformed or missing input (empty batches, bad dates, unknown variants)."""

    code = "VALIDATION"
    status_code = 400


class NotFoundError(ExperimentError):
    """No experiment matches the code/org (after global fallback) or id."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(ExperimentError):
    """New assignment requested against an experiment that is not active."""

    code = "CONFLICT"
    status_code = 409
