"""Exceptions raised by the collector core and mapped to HTTP status codes by the handler."""


class CollectorError(Exception):
    status_code = 500


class StorageError(CollectorError):
    """A read or write against the analytics table failed."""

    status_code = 500

    def __init__(self, operation: str, key: dict, cause: Exception):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"{operation} failed for {key}: {cause}")


class ConflictError(CollectorError):
    status_code = 409


class AuthError(CollectorError):
    status_code = 401


class BadRequestError(CollectorError):
    status_code = 400


class NotFoundError(CollectorError):
    status_code = 404
