"""Auth-specific errors."""


class AuthenticationError(Exception):
    """Raised when API key authentication fails.

    The error message is for internal logging only —
    the client always receives a generic 401.
    """


class AuthorizationError(Exception):
    """Raised when a valid key is not allowed to make this request (403)."""


class APIKeyNotFound(Exception):
    """No key with this id belongs to the hotel."""


class InvalidKeyTransition(Exception):
    """Status change not allowed, e.g. re-activating a revoked key."""
