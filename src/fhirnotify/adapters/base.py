"""Abstract base class for delivery adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from fhirnotify.errors.exceptions import PreconditionError
from fhirnotify.models.enums import NotificationType
from fhirnotify.models.notification import AnyNotification, OneOffNotification

if TYPE_CHECKING:
    from fhirnotify.backend import FhirNotificationBackend


class NotificationAdapter(ABC):
    """Delivers one stored notification over one channel."""

    key: str = "unknown"
    notification_type: NotificationType = NotificationType.EMAIL
    supports_attachments: bool = False

    def __init__(self, backend: FhirNotificationBackend):
        self.backend = backend

    @abstractmethod
    async def send(self, notification: AnyNotification, context: dict[str, Any]) -> None:
        """Deliver ``notification`` rendered with ``context``.

        Raises:
            PreconditionError: If the notification cannot be addressed.
        """
        ...

    async def get_recipient_email(self, notification: AnyNotification) -> str:
        """Inline contact for one-off notifications, else the recipient's stored email."""
        if isinstance(notification, OneOffNotification):
            return notification.email_or_phone
        email = await self.backend.get_user_email_from_notification(notification.id)
        if not email:
            raise PreconditionError(
                f"User email not found for notification {notification.id}",
                details={"notification_id": notification.id},
            )
        return email
