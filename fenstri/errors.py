"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status the API answers with, so blueprints can
let them propagate and rely on the handler registered in ``create_app``.
"""
from __future__ import annotations


class FenstriError(Exception):
    status_code = 400

    def __init__(self, message: str = "Request could not be processed"):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message}


class AccessDenied(FenstriError):
    """Caller's role or organization does not permit the read/write."""

    status_code = 403

    def __init__(self, message: str = "You are not allowed to access this resource"):
        super().__init__(message)


class NotFound(FenstriError):
    status_code = 404

    def __init__(self, resource: str = "Resource", resource_id: str | None = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} '{resource_id}' not found"
        self.resource = resource
        super().__init__(message)


class InvalidTransition(FenstriError):
    """Work-order status change refused; the stored status is untouched."""

    status_code = 409

    def __init__(self, current: str | None = None, target: str | None = None, message: str | None = None):
        self.current = current
        self.target = target
        if message is None:
            message = f"Cannot move work order from '{current}' to '{target}'"
        super().__init__(message)


class ConstraintViolation(FenstriError):
    status_code = 422

    def __init__(self, message: str = "Validation failed", field: str | None = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


class ExternalServiceFailure(FenstriError):
    status_code = 502

    def __init__(self, service: str = "External service", message: str | None = None):
        msg = f"{service} call failed"
        if message:
            msg = f"{msg}: {message}"
        self.service = service
        super().__init__(msg)


class InvalidPayload(FenstriError):
    """Malformed or unverifiable inbound payload (e.g. an unsigned webhook)."""

    status_code = 400


__all__ = [
    "FenstriError",
    "AccessDenied",
    "NotFound",
    "InvalidTransition",
    "ConstraintViolation",
    "ExternalServiceFailure",
    "InvalidPayload",
]
