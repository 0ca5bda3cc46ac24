"""
Domain errors for the order workflow.

Each error carries a human-readable message and the HTTP status it is
reported with; main.py turns them into `{"message": ...}` responses.
"""


class DeliveryError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DeliveryError):
    status_code = 404


class Unauthorized(DeliveryError):
    status_code = 403


class InvalidTransition(DeliveryError):
    status_code = 400


class Conflict(DeliveryError):
    """Lost a race or hit a busy resource; the caller may retry."""
    status_code = 409


class ValidationError(DeliveryError):
    status_code = 422
