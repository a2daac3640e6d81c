"""String enums for the notification domain and the record store vocabulary."""

from enum import StrEnum


class NotificationType(StrEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"
    IN_APP = "IN_APP"


class NotificationStatus(StrEnum):
    PENDING_SEND = "PENDING_SEND"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    READ = "READ"


class CommunicationStatus(StrEnum):
    """Communication.status values this backend reads and writes."""

    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    STOPPED = "stopped"
    NOT_DONE = "not-done"


class StringLookupMode(StrEnum):
    EXACT = "exact"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    INCLUDES = "includes"
