"""Custom exceptions for the body tracker."""


class BodyTrackerError(Exception):
    """Base exception for all body tracker errors."""

    pass


class ConfigurationError(BodyTrackerError):
    """Raised when there is a configuration error."""

    pass


class ValidationError(BodyTrackerError):
    """Raised when input data is malformed (bad date keys, empty names)."""

    pass


class LocalStoreError(BodyTrackerError):
    """Raised when the local durable store cannot be read or written."""

    pass


class RemoteStoreError(BodyTrackerError):
    """Raised when remote store operations fail."""

    pass


class RemoteConflictError(RemoteStoreError):
    """Raised when the remote store rejects a write because the version token is stale."""

    pass


class RemoteFormatError(RemoteStoreError):
    """Raised when the remote document cannot be decoded."""

    pass


class AuthenticationError(RemoteStoreError):
    """Raised when the remote store rejects the credentials."""

    pass
