"""Email delivery adapter: renders a notification and hands the message to a sender."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from fhirnotify.adapters.base import NotificationAdapter
from fhirnotify.models.attachment import StoredAttachment
from fhirnotify.models.enums import NotificationType
from fhirnotify.models.notification import AnyNotification

if TYPE_CHECKING:
    from fhirnotify.backend import FhirNotificationBackend

logger = logging.getLogger(__name__)


class RenderedTemplate(BaseModel):
    subject: str
    body: str


class EmailAttachment(BaseModel):
    filename: str
    # base64-encoded bytes
    content: str
    content_type: str


class EmailMessage(BaseModel):
    to: str
    subject: str
    text: str
    attachments: list[EmailAttachment] = Field(default_factory=list)


class TemplateRenderer(Protocol):
    async def render(self, notification: AnyNotification, context: dict[str, Any]) -> RenderedTemplate: ...


class EmailSender(Protocol):
    async def send_email(self, message: EmailMessage) -> None: ...


class EmailNotificationAdapter(NotificationAdapter):
    """Sends EMAIL notifications through the record store's email facility.

    Rendering and transport are injected; this class only assembles the
    message and attaches stored files.
    """

    key: str = "fhir-email"
    notification_type: NotificationType = NotificationType.EMAIL
    supports_attachments: bool = True

    def __init__(
        self,
        backend: FhirNotificationBackend,
        renderer: TemplateRenderer,
        sender: EmailSender,
    ):
        super().__init__(backend)
        self.renderer = renderer
        self.sender = sender

    async def send(self, notification: AnyNotification, context: dict[str, Any]) -> None:
        recipient = await self.get_recipient_email(notification)
        template = await self.renderer.render(notification, context)

        message = EmailMessage(to=recipient, subject=template.subject, text=template.body)
        if notification.attachments:
            message.attachments = await self.prepare_attachments(notification.attachments)

        await self.sender.send_email(message)
        logger.info(
            "Sent notification %s via %s with %d attachments",
            notification.id,
            self.key,
            len(message.attachments),
        )

    async def prepare_attachments(self, attachments: list[StoredAttachment]) -> list[EmailAttachment]:
        """Read every attachment's bytes concurrently and base64-encode them."""
        contents = await asyncio.gather(*(attachment.file.read() for attachment in attachments))
        return [
            EmailAttachment(
                filename=attachment.filename,
                content=base64.b64encode(content).decode("ascii"),
                content_type=attachment.content_type,
            )
            for attachment, content in zip(attachments, contents)
        ]
