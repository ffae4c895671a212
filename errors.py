"""
Error types raised by the services.

Each carries the HTTP status it maps to; main.py turns them into the
``{"success": false, "error": ...}`` envelope.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationFailed(StoreError):
    status_code = 400


class AuthenticationRequired(StoreError):
    status_code = 401


class PermissionDenied(StoreError):
    status_code = 403


class NotFound(StoreError):
    status_code = 404


class InvalidTransition(StoreError):
    status_code = 409


class CartFrozen(StoreError):
    status_code = 409


class GatewayError(StoreError):
    status_code = 502


class ServiceUnavailable(StoreError):
    status_code = 503
