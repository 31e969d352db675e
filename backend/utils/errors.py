"""
Error kinds raised by the bundle and deployment layers.

Each carries the HTTP status it maps to; server.py converts them to
{"error": message} responses.
"""
from typing import Optional, List


class DeploymentError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DeploymentError):
    """Malformed input to the exporter, importer or injector. Never retried."""
    status_code = 400

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None):
        super().__init__(message)
        self.validation_errors = validation_errors or []


class PreconditionError(DeploymentError):
    """Deployment not eligible for the requested operation."""
    status_code = 400


class InvalidTransitionError(PreconditionError):
    pass


class ConcurrentModificationError(PreconditionError):
    """Another run holds the deployment lease or moved its status first."""
    status_code = 409


class CollaboratorError(DeploymentError):
    """An external provisioning, vault or hosting call failed or timed out."""
    status_code = 500


class NotFoundError(DeploymentError):
    status_code = 404


class AccessDeniedError(DeploymentError):
    """Resource belongs to a different organization."""
    status_code = 403
