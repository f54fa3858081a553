"""
Error types raised by the gradebook engine.

Every error carries a stable ``code`` that views return to clients as
``{"error": code, "message": ...}``.
"""
from django.core.exceptions import ValidationError as DjangoValidationError


class ValidationError(DjangoValidationError):
    """Rejected input (out-of-range score, missing identity field, ...)."""

    def __init__(self, message, code='validation_error', params=None):
        super().__init__(message, code=code, params=params)


class GradebookError(Exception):
    code = 'gradebook_error'
    status_code = 400

    def __init__(self, message='', **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self):
        data = {'error': self.code, 'message': self.message}
        data.update(self.details)
        return data


class IncompleteGrades(GradebookError):
    """No scored subject for a term, or a term average missing for the year."""
    code = 'incomplete_grades'
    status_code = 409


class InsufficientHistory(GradebookError):
    """A previous-term figure was asked for but no real data exists."""
    code = 'insufficient_history'
    status_code = 409


class InvalidTransition(GradebookError):
    code = 'invalid_transition'
    status_code = 409


class PermissionDenied(GradebookError):
    code = 'permission_denied'
    status_code = 403


class ConcurrentGradeWrite(GradebookError):
    """Grades changed while a snapshot was being computed; recompute and retry."""
    code = 'concurrent_grade_write'
    status_code = 409


class MissingSignature(GradebookError):
    code = 'missing_signature'
    status_code = 409


class DownstreamUnavailable(GradebookError):
    """The document renderer or every notification channel failed."""
    code = 'downstream_unavailable'
    status_code = 503


class InvalidVerificationCode(GradebookError):
    code = 'invalid_code'
    status_code = 404


class VerificationDisabled(GradebookError):
    code = 'access_denied'
    status_code = 403


class TooManyAttempts(GradebookError):
    code = 'rate_limited'
    status_code = 429
