"""Pydantic models for regular and one-off notifications."""

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from fhirnotify.models.attachment import AttachmentInput, StoredAttachment
from fhirnotify.models.enums import NotificationStatus, NotificationType


def _assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps are read as UTC, matching how they are written to the store
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class NotificationContent(BaseModel):
    """Fields shared by every notification shape, stored or not."""

    model_config = ConfigDict(extra="forbid")

    notification_type: NotificationType
    title: str | None = None
    body_template: str
    subject_template: str | None = None
    context_name: str = Field(..., min_length=1)
    context_parameters: dict[str, Any] = Field(default_factory=dict)
    # None means "send as soon as possible"
    send_after: UtcDatetime | None = None
    git_commit_sha: str | None = None


class NotificationInput(NotificationContent):
    """A notification addressed to a stored person/entity reference."""

    user_id: str = Field(..., min_length=1)
    attachments: list[AttachmentInput] = Field(default_factory=list)


class OneOffNotificationInput(NotificationContent):
    """A notification addressed to an inline contact, with no stored recipient."""

    email_or_phone: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    attachments: list[AttachmentInput] = Field(default_factory=list)


class StoredNotification(NotificationContent):
    id: str
    status: NotificationStatus = NotificationStatus.PENDING_SEND
    adapter_used: str | None = None
    context_used: Any = None
    sent_at: UtcDatetime | None = None
    read_at: UtcDatetime | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None
    # Optimistic-concurrency token as received from the store
    version_id: str | None = None
    attachments: list[StoredAttachment] = Field(default_factory=list)

    @property
    def is_one_off(self) -> bool:
        return False


class Notification(StoredNotification):
    user_id: str


class OneOffNotification(StoredNotification):
    email_or_phone: str
    first_name: str
    last_name: str

    @property
    def is_one_off(self) -> bool:
        return True


AnyNotification = Notification | OneOffNotification


# Fields that may be replaced on update but never unset
_NON_NULLABLE_UPDATE_FIELDS = frozenset({
    "notification_type",
    "body_template",
    "context_name",
    "context_parameters",
    "status",
    "user_id",
    "email_or_phone",
    "first_name",
    "last_name",
})


class NotificationUpdateBase(BaseModel):
    """Partial update. Only fields explicitly passed are applied.

    A field passed as ``None`` is unset on the record; an omitted field is left
    untouched.
    """

    model_config = ConfigDict(extra="forbid")

    notification_type: NotificationType | None = None
    title: str | None = None
    body_template: str | None = None
    subject_template: str | None = None
    context_name: str | None = None
    context_parameters: dict[str, Any] | None = None
    send_after: UtcDatetime | None = None
    git_commit_sha: str | None = None
    status: NotificationStatus | None = None
    adapter_used: str | None = None
    context_used: Any = None
    sent_at: UtcDatetime | None = None
    read_at: UtcDatetime | None = None

    @model_validator(mode="after")
    def _reject_unset_of_required(self):
        for name in self.model_fields_set & _NON_NULLABLE_UPDATE_FIELDS:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be unset")
        return self

    def changes(self) -> dict[str, Any]:
        """Return only the explicitly provided fields."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class NotificationUpdate(NotificationUpdateBase):
    user_id: str | None = None


class OneOffNotificationUpdate(NotificationUpdateBase):
    email_or_phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
