from __future__ import annotations


class ChatError(Exception):
    """Base class for errors that carry an HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(ChatError):
    status_code = 401


class AuthorizationError(ChatError):
    status_code = 403


class NotFoundError(ChatError):
    status_code = 404


class ValidationError(ChatError):
    status_code = 400


class ProviderConflictError(ChatError):
    """The provider reported that the resource already exists."""

    status_code = 409


class ProviderUnavailableError(ChatError):
    status_code = 500


class PersistenceError(ChatError):
    status_code = 500


class ThreadScopeConflictError(PersistenceError):
    """Raised by thread stores when the scope tuple is already taken."""


class IdentityError(ValueError):
    """Raised when a provider identity does not carry a recognized role."""
