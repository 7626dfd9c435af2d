"""
Error taxonomy for Beacon

Every error raised by the dispatch core derives from BeaconError and carries
the HTTP status the web layer reports for it:
- ValidationError: missing or malformed input
- AuthError: missing or invalid credential
- AuthorizationError: authenticated but not permitted
- NotFoundError: unknown incident, notification or user
- ConflictError: illegal state transition or concurrent modification
- DependencyError: external lookup failed (never escapes the core)
- PersistenceError: storage operation failed
"""

from typing import Optional


class BeaconError(Exception):
    """Base class for all Beacon errors"""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BeaconError):
    status_code = 400
    default_message = "Invalid request"


class AuthError(BeaconError):
    status_code = 401
    default_message = "Not authorized, no token"


class AuthorizationError(BeaconError):
    status_code = 403
    default_message = "Not authorized to perform this action"


class NotFoundError(BeaconError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(BeaconError):
    status_code = 409
    default_message = "Operation conflicts with current state"


class DependencyError(BeaconError):
    status_code = 502
    default_message = "External lookup failed"


class PersistenceError(BeaconError):
    status_code = 500
    default_message = "Storage operation failed"
