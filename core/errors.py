from typing import Dict, Optional


class DispatchServiceError(Exception):
    """Base class for errors surfaced by the dispatch service."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DispatchServiceError):
    """Malformed or missing input. Nothing is stored or dispatched."""

    status_code = 400

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}


class ConflictError(DispatchServiceError):
    """A registration collides with an existing vehicle number."""

    status_code = 409


class NotFoundError(DispatchServiceError):
    status_code = 404


class GatewayError(DispatchServiceError):
    """Failure talking to the notification provider for one contact."""

    status_code = 502


class DatastoreError(DispatchServiceError):
    """The registry could not be read or written."""

    status_code = 503
