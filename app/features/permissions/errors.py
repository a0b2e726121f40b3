"""
Exceptions raised by the authorization engine.
"""


class AuthorizationError(Exception):
    """Base class for authorization engine errors."""


class PolicyStoreError(AuthorizationError):
    """The rule storage could not be read or written.

    Never means "denied". Callers that need a decision must treat it as deny.
    """


class InvalidValueError(AuthorizationError, ValueError):
    """A subject, domain, role, resource or action failed validation."""
