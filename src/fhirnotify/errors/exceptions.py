"""Custom exception classes for the notification backend."""


class FhirNotifyError(Exception):
    """Base exception for fhirnotify."""

    def __init__(self, code: str, message: str, details=None):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(FhirNotifyError):
    """Record not found in the record store."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            details={"resource": resource, "resource_id": resource_id},
        )


class MappingError(FhirNotifyError):
    """A stored record cannot be decoded into a notification."""

    def __init__(self, message: str, resource_id: str | None = None):
        self.resource_id = resource_id
        super().__init__("MAPPING_ERROR", message, details={"resource_id": resource_id})


class UnsupportedFilterError(FhirNotifyError):
    """The filter uses a shape the store's search grammar cannot express."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__("UNSUPPORTED_FILTER", message, details={"field": field})


class ConflictingFilterError(FhirNotifyError):
    """AND sub-filters set one search parameter to different values."""

    def __init__(self, parameter: str, existing: str, incoming: str):
        self.parameter = parameter
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            "CONFLICTING_FILTER",
            f"Conflicting values for search parameter '{parameter}' in AND filter: "
            f"'{existing}' vs '{incoming}'. AND sub-filters must not set different "
            "values for the same search parameter.",
            details={"parameter": parameter, "values": [existing, incoming]},
        )


class AttachmentNotFoundError(FhirNotifyError):
    """A referenced attachment file does not exist."""

    def __init__(self, file_id: str, message: str | None = None):
        self.file_id = file_id
        super().__init__(
            "ATTACHMENT_NOT_FOUND",
            message or f"Attachment file not found: {file_id}",
            details={"file_id": file_id},
        )


class AttachmentInUseError(FhirNotifyError):
    """An attachment file is still referenced and cannot be deleted."""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(
            "ATTACHMENT_IN_USE",
            f"Cannot delete attachment file '{file_id}': still referenced by notifications",
            details={"file_id": file_id},
        )


class PreconditionError(FhirNotifyError):
    """The operation's precondition does not hold for the current state."""

    def __init__(self, message: str, details=None):
        super().__init__("PRECONDITION_FAILED", message, details)
