"""
Domain errors raised by the core modules.

Each error carries the HTTP status the route layer answers with and a message
that is safe to show to the caller.
"""


class DomainError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = 400


class InvalidAdjustment(DomainError):
    status_code = 400


class NotFound(DomainError):
    status_code = 404


class ConcurrencyConflict(DomainError):
    status_code = 409


class InvalidTransition(DomainError):
    status_code = 409
