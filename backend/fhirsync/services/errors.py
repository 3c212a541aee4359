"""Domain errors raised by the sync engine.

Each error carries a stable ``code`` and the HTTP status the API maps it to.
Messages are safe to show administrators; raw upstream detail belongs in the
audit trail only.
"""


class SyncServiceError(Exception):
    code = "sync_error"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " ").capitalize())
        self.message = message or self.code.replace("_", " ").capitalize()


class ConnectionNotFound(SyncServiceError):
    code = "connection_not_found"
    status_code = 404


class ConnectionValidationError(SyncServiceError):
    code = "invalid_connection"
    status_code = 422


class ConnectionNotActive(SyncServiceError):
    code = "connection_not_active"
    status_code = 409


class ConnectionUnreachable(SyncServiceError):
    """Network failure or repeated transient server errors."""

    code = "connection_unreachable"
    status_code = 502


class FhirTimeout(ConnectionUnreachable):
    code = "timeout"
    status_code = 504


class ConnectionUnauthorized(SyncServiceError):
    """The server rejected the bearer credential."""

    code = "connection_unauthorized"
    status_code = 502


class AuthExpired(SyncServiceError):
    """The stored token is expired and could not be refreshed."""

    code = "auth_expired"
    status_code = 502


class FhirRequestError(SyncServiceError):
    """Non-retryable rejection of a request (4xx other than auth/404)."""

    code = "fhir_request_rejected"
    status_code = 502

    def __init__(self, message: str | None = None, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class SearchTruncated(FhirRequestError):
    """A search had more pages than the client is allowed to follow."""

    code = "search_truncated"


class ResourceNotFound(SyncServiceError):
    code = "resource_not_found"
    status_code = 404


class UnsupportedResourceType(SyncServiceError):
    code = "unsupported_resource_type"
    status_code = 422


class TranslationError(SyncServiceError):
    code = "translation_error"
    status_code = 422


class NoMatchFound(SyncServiceError):
    code = "no_match_found"
    status_code = 404


class PatientNotFound(SyncServiceError):
    code = "patient_not_found"
    status_code = 404


class MappingNotFound(SyncServiceError):
    code = "mapping_not_found"
    status_code = 404


class InvalidMappingTransition(SyncServiceError):
    code = "invalid_mapping_transition"
    status_code = 409


class ConflictNotFound(SyncServiceError):
    code = "conflict_not_found"
    status_code = 404


class ConflictAlreadyResolved(SyncServiceError):
    code = "conflict_already_resolved"
    status_code = 409


class InvalidResolutionStrategy(SyncServiceError):
    code = "invalid_resolution_strategy"
    status_code = 422


class SyncInProgress(SyncServiceError):
    code = "sync_in_progress"
    status_code = 409


# Errors contained to a single resource during a pass. Everything else that
# escapes a resource handler aborts the pass.
RESOURCE_LEVEL_ERRORS: tuple[type[SyncServiceError], ...] = (
    TranslationError,
    UnsupportedResourceType,
    FhirRequestError,
    ResourceNotFound,
)

# Errors that mean the server or its credential is unusable for this pass.
CONNECTION_LEVEL_ERRORS: tuple[type[SyncServiceError], ...] = (
    AuthExpired,
    ConnectionUnauthorized,
    ConnectionUnreachable,
)
