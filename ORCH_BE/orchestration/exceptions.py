from rest_framework import exceptions, status
from rest_framework.views import exception_handler as drf_exception_handler

from .responses import error_body


class FilterValidationError(exceptions.ValidationError):
    default_detail = "Invalid filters."
    default_code = "invalid_filters"


class JobNotFound(exceptions.NotFound):
    default_detail = "Job not found."


class JobConflict(exceptions.APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "An active job already exists for this scope."
    default_code = "conflict"

    def __init__(self, existing_job_id: str, existing_status: str, detail=None):
        self.existing_job_id = str(existing_job_id)
        self.existing_status = existing_status
        super().__init__(
            detail
            or f"A job is already {existing_status} for this scope "
            f"(job {self.existing_job_id}). Wait for it to finish."
        )

    def get_extra_details(self) -> dict:
        return {"existingJobId": self.existing_job_id, "status": self.existing_status}


class AllBlocked(exceptions.APIException):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = "Every requested item is on scan cooldown."
    default_code = "all_blocked"

    def __init__(self, blocked: list, next_available_at=None, detail=None):
        self.blocked = blocked
        self.next_available_at = next_available_at
        super().__init__(
            detail
            or f"All {len(blocked)} requested products reached their scan limit. "
            "Try again after the cooldown ends."
        )

    def get_extra_details(self) -> dict:
        return {
            "blocked": self.blocked,
            "nextAvailableAt": (
                self.next_available_at.isoformat() if self.next_available_at else None
            ),
        }


class CollaboratorError(Exception):
    """Raised by marketplace connectors and text generators."""

    retryable = True


class TransientCollaboratorError(CollaboratorError):
    retryable = True


class FatalCollaboratorError(CollaboratorError):
    retryable = False


class ItemRejected(Exception):
    """One item of a batch could not be processed; the batch carries on."""


class JobTimeout(TransientCollaboratorError):
    pass


def _error_code_from_exception(exc: Exception) -> str:
    if isinstance(exc, FilterValidationError):
        return "invalid_filters"
    if isinstance(exc, JobConflict):
        return "conflict"
    if isinstance(exc, AllBlocked):
        return "all_blocked"
    if isinstance(exc, exceptions.ValidationError):
        return "validation_error"
    if isinstance(exc, exceptions.NotAuthenticated):
        return "not_authenticated"
    if isinstance(exc, exceptions.AuthenticationFailed):
        return "authentication_failed"
    if isinstance(exc, exceptions.PermissionDenied):
        return "permission_denied"
    if isinstance(exc, exceptions.NotFound):
        return "not_found"
    if isinstance(exc, exceptions.Throttled):
        return "throttled"
    return "server_error"


def _extract_message(detail) -> str:
    if isinstance(detail, list) and detail:
        return str(detail[0])
    if isinstance(detail, dict) and detail:
        first_value = next(iter(detail.values()))
        if isinstance(first_value, list) and first_value:
            return str(first_value[0])
        return str(first_value)
    return str(detail)


def custom_exception_handler(exc, context):
    response = drf_exception_handler(exc, context)
    if response is None:
        return None

    message = "Request failed."
    if isinstance(exc, exceptions.APIException) and exc.detail:
        message = _extract_message(exc.detail)

    details = response.data
    if isinstance(exc, (JobConflict, AllBlocked)):
        details = exc.get_extra_details()

    response.data = error_body(_error_code_from_exception(exc), message, details)
    response.status_code = response.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
    return response
