"""Domain exceptions for the study workflow service."""

from enum import Enum


class ErrorKind(str, Enum):
    """Machine readable error classification shared by API and bulk results."""
    NOT_FOUND = "NotFound"
    INVALID_TRANSITION = "InvalidTransition"
    UNAUTHORIZED = "Unauthorized"
    REPORT_NOT_AVAILABLE = "ReportNotAvailable"
    EXTERNAL_COLLABORATOR_TIMEOUT = "ExternalCollaboratorTimeout"
    VALIDATION_ERROR = "ValidationError"
    # bulk-only outcomes
    CANCELLED = "Cancelled"
    EXTERNAL_COLLABORATOR_ERROR = "ExternalCollaboratorError"
    INTERNAL_ERROR = "InternalError"


class WorkflowError(Exception):
    """Base class for every error the workflow engine raises on purpose."""
    kind = ErrorKind.INTERNAL_ERROR


class NotFound(WorkflowError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransition(WorkflowError):
    kind = ErrorKind.INVALID_TRANSITION


class Unauthorized(WorkflowError):
    kind = ErrorKind.UNAUTHORIZED


class ReportNotAvailable(WorkflowError):
    kind = ErrorKind.REPORT_NOT_AVAILABLE


class ExternalCollaboratorTimeout(WorkflowError):
    kind = ErrorKind.EXTERNAL_COLLABORATOR_TIMEOUT


class ValidationError(WorkflowError):
    kind = ErrorKind.VALIDATION_ERROR


class DocumentStoreError(WorkflowError):
    """Raised when the report/document store fails for a reason other than a timeout."""
    kind = ErrorKind.EXTERNAL_COLLABORATOR_ERROR
