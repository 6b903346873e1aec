"""
Exception hierarchy for the JQL engine.

Every error carries a stable machine-readable code and the HTTP status the
API reports it with, so callers always receive a {code, message} pair.
The engine lets search backend failures propagate unchanged; only the API
layer wraps them in UpstreamSearchError, keeping the original message.
"""

from typing import Dict, List, Optional


class JQLEngineError(Exception):
    """Base class for errors raised by the JQL engine."""

    code = 'INTERNAL_ERROR'
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code, 'message': self.message}


class QueryValidationError(JQLEngineError):
    """A JQL string failed validation."""

    code = 'INVALID_JQL'
    status_code = 400

    def __init__(self, errors: List[Dict[str, str]]):
        self.errors = errors
        details = ', '.join(error['message'] for error in errors)
        super().__init__(f"Invalid JQL: {details}")


class AccessDeniedError(JQLEngineError):
    """An index outside the allow-list was requested."""

    code = 'ACCESS_DENIED'
    status_code = 403


class NoAccessibleIndexesError(AccessDeniedError):
    """A query resolved to zero permitted indexes."""

    code = 'NO_INDEXES'


class JoinConfigurationError(JQLEngineError):
    """A join request is malformed; raised before any fetch."""

    code = 'INVALID_JOIN_CONFIGURATION'
    status_code = 400


class SavedQueryNotFoundError(JQLEngineError):
    """A saved query identifier does not exist."""

    code = 'NOT_FOUND'
    status_code = 404


class UpstreamSearchError(JQLEngineError):
    """The search backend failed; the message is the backend's own."""

    code = 'UPSTREAM_ERROR'
    status_code = 502


class InvalidRequestError(JQLEngineError):
    """A request body is well-formed JSON but semantically unusable."""

    code = 'INVALID_REQUEST'
    status_code = 400
