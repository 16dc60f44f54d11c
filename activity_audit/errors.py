"""
Error taxonomy for the audit pipeline.

Business-operation errors are recorded on the activity record,
never raised by the audit code. Audit-internal errors are
contained by the interceptor. Query-side errors propagate to
the caller, where the API layer maps them to HTTP responses.
"""


class AuditError(Exception):
    """Base class for errors raised by the audit pipeline."""


class OperationFailure(Exception):
    """
    Convenience base for business errors that want a stable code.

    The interceptor accepts any exception, but reads ``code`` and
    ``detail`` when present so the stored error is more useful
    than a class name.
    """

    def __init__(self, message: str, code: str | None = None, detail=None):
        super().__init__(message)
        self.code = code or self.__class__.__name__
        self.detail = detail


class AuditWriteFailure(AuditError):
    """The record store rejected a pre- or post-operation write."""


class ValidationFailure(AuditError, ValueError):
    """A query request carried invalid filter or pagination input."""


class AuthorizationFailure(AuditError):
    """The caller is not allowed to use the requested surface."""


class RecordNotFound(AuditError, ValueError):
    """No activity record matched the requested id."""
