"""FHIR notification backend: persists and queries notifications as Communication records."""

from __future__ import annotations

import logging
from typing import Any

from fhirnotify.attachments.dedup import AttachmentDeduplicator
from fhirnotify.attachments.store import FhirAttachmentStore
from fhirnotify.config import Settings
from fhirnotify.config import settings as default_settings
from fhirnotify.errors.exceptions import (
    AttachmentNotFoundError,
    MappingError,
    NotFoundError,
    PreconditionError,
)
from fhirnotify.filters.compiler import FilterCapabilities, FilterCompiler
from fhirnotify.mapping.communication import CommunicationMapper
from fhirnotify.mapping.conventions import (
    COMMUNICATION,
    NOTIFICATION_TAG,
    ONE_OFF_TAG,
    escape_search_value,
    format_instant,
    utcnow,
)
from fhirnotify.models.attachment import AttachmentFileRecord, AttachmentInput, StoredAttachment
from fhirnotify.models.enums import CommunicationStatus, NotificationStatus, NotificationType
from fhirnotify.models.filters import NotificationFilter
from fhirnotify.models.notification import (
    AnyNotification,
    Notification,
    NotificationInput,
    NotificationUpdate,
    OneOffNotification,
    OneOffNotificationInput,
    OneOffNotificationUpdate,
)
from fhirnotify.store.base import RecordStoreClient, Resource, SearchParams

logger = logging.getLogger(__name__)


class FhirNotificationBackend:
    """Notification persistence on a FHIR record store.

    Read-modify-write operations pass the record's ``meta.versionId`` to the
    store on update but are not otherwise atomic: concurrent updates to one
    notification can race unless the store enforces conditional writes.
    """

    def __init__(
        self,
        client: RecordStoreClient,
        attachments: AttachmentDeduplicator | None = None,
        mapper: CommunicationMapper | None = None,
        compiler: FilterCompiler | None = None,
        identifier: str = "default-fhir",
        check_preconditions: bool = True,
        default_page_size: int = 50,
    ):
        self.client = client
        self.attachments = attachments
        self.mapper = mapper or CommunicationMapper()
        self.compiler = compiler or FilterCompiler()
        self.identifier = identifier
        self.check_preconditions = check_preconditions
        self.default_page_size = default_page_size

    def get_backend_identifier(self) -> str:
        return self.identifier

    def get_filter_capabilities(self) -> FilterCapabilities:
        return self.compiler.get_capabilities()

    def _require_attachments(self) -> AttachmentDeduplicator:
        if self.attachments is None:
            raise PreconditionError("Attachment store is not configured for this backend")
        return self.attachments

    # ------------------------------------------------------------------
    # Search helpers
    # ------------------------------------------------------------------

    async def _search(self, params: SearchParams) -> list[AnyNotification]:
        """Search and decode, skipping records that are not notifications."""
        communications = await self.client.search(COMMUNICATION, params)
        notifications = []
        for communication in communications:
            try:
                notifications.append(self.mapper.from_external(communication))
            except MappingError as exc:
                logger.warning("Skipping unmappable Communication %s: %s", communication.get("id"), exc.message)
        return notifications

    @staticmethod
    def _paging(page: int, page_size: int) -> list[tuple[str, str]]:
        return [("_count", str(page_size)), ("_offset", str(page * page_size))]

    def _pending_params(self) -> list[tuple[str, str]]:
        return [
            ("status", CommunicationStatus.IN_PROGRESS.value),
            ("_tag", NOTIFICATION_TAG),
            ("sent:le", format_instant(utcnow())),
        ]

    def _future_params(self) -> list[tuple[str, str]]:
        return [
            ("status", CommunicationStatus.IN_PROGRESS.value),
            ("_tag", NOTIFICATION_TAG),
            ("sent:gt", format_instant(utcnow())),
        ]

    def _in_app_unread_params(self, user_id: str) -> list[tuple[str, str]]:
        return [
            ("status", CommunicationStatus.COMPLETED.value),
            ("_tag", NOTIFICATION_TAG),
            ("_tag", NotificationType.IN_APP.value),
            ("recipient", escape_search_value(user_id)),
        ]

    @staticmethod
    def _regular_only(notifications: list[AnyNotification]) -> list[Notification]:
        return [n for n in notifications if isinstance(n, Notification)]

    @staticmethod
    def _one_off_only(notifications: list[AnyNotification]) -> list[OneOffNotification]:
        return [n for n in notifications if isinstance(n, OneOffNotification)]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_all_pending_notifications(self) -> list[AnyNotification]:
        """Notifications awaiting delivery whose due time has passed."""
        return await self._search(self._pending_params())

    async def get_pending_notifications(self, page: int, page_size: int) -> list[AnyNotification]:
        return await self._search(self._pending_params() + self._paging(page, page_size))

    async def get_all_future_notifications(self) -> list[AnyNotification]:
        """Notifications scheduled for later."""
        return await self._search(self._future_params())

    async def get_future_notifications(self, page: int, page_size: int) -> list[AnyNotification]:
        return await self._search(self._future_params() + self._paging(page, page_size))

    async def get_all_future_notifications_from_user(self, user_id: str) -> list[Notification]:
        params = self._future_params() + [("recipient", escape_search_value(user_id))]
        return self._regular_only(await self._search(params))

    async def get_future_notifications_from_user(
        self, user_id: str, page: int, page_size: int
    ) -> list[Notification]:
        params = self._future_params() + [("recipient", escape_search_value(user_id))]
        params += self._paging(page, page_size)
        return self._regular_only(await self._search(params))

    async def get_all_notifications(self) -> list[AnyNotification]:
        return await self._search([("_tag", NOTIFICATION_TAG)])

    async def get_notifications(self, page: int, page_size: int) -> list[AnyNotification]:
        return await self._search([("_tag", NOTIFICATION_TAG)] + self._paging(page, page_size))

    async def get_all_one_off_notifications(self) -> list[OneOffNotification]:
        return self._one_off_only(await self._search([("_tag", NOTIFICATION_TAG), ("_tag", ONE_OFF_TAG)]))

    async def get_one_off_notifications(self, page: int, page_size: int) -> list[OneOffNotification]:
        params = [("_tag", NOTIFICATION_TAG), ("_tag", ONE_OFF_TAG)] + self._paging(page, page_size)
        return self._one_off_only(await self._search(params))

    async def filter_all_in_app_unread_notifications(self, user_id: str) -> list[Notification]:
        notifications = self._regular_only(await self._search(self._in_app_unread_params(user_id)))
        return [n for n in notifications if n.read_at is None]

    async def filter_in_app_unread_notifications(
        self, user_id: str, page: int, page_size: int
    ) -> list[Notification]:
        params = self._in_app_unread_params(user_id) + self._paging(page, page_size)
        notifications = self._regular_only(await self._search(params))
        return [n for n in notifications if n.read_at is None]

    async def filter_notifications(
        self,
        notification_filter: NotificationFilter,
        page: int = 0,
        page_size: int | None = None,
    ) -> list[AnyNotification]:
        """Run a compiled filter against the store.

        Compilation errors are raised before the store is contacted.
        """
        request = self.compiler.compile(notification_filter, page, page_size or self.default_page_size)
        return await self._search(request.params)

    # ------------------------------------------------------------------
    # Single-record reads
    # ------------------------------------------------------------------

    async def _read(self, notification_id: str) -> Resource:
        return await self.client.read(COMMUNICATION, notification_id)

    async def _hydrate(self, notification: AnyNotification, resource: Resource) -> AnyNotification:
        if self.attachments is not None:
            notification.attachments = await self.attachments.resolve_stored(notification.id, resource)
        return notification

    async def get_notification(self, notification_id: str) -> AnyNotification | None:
        """Read one notification; None when it does not exist.

        Raises:
            MappingError: If the record exists but is not a notification.
        """
        try:
            resource = await self._read(notification_id)
        except NotFoundError:
            return None
        return await self._hydrate(self.mapper.from_external(resource), resource)

    async def get_one_off_notification(self, notification_id: str) -> OneOffNotification | None:
        notification = await self.get_notification(notification_id)
        if isinstance(notification, OneOffNotification):
            return notification
        return None

    async def get_user_email_from_notification(self, notification_id: str) -> str | None:
        """Resolve the recipient's email from the referenced Patient/Practitioner."""
        resource = await self._read(notification_id)
        recipients = resource.get("recipient") or []
        reference = recipients[0].get("reference") if recipients else None
        if not reference:
            return None

        resource_type, _, recipient_id = reference.partition("/")
        if not recipient_id:
            logger.error("Invalid recipient reference %r on notification %s", reference, notification_id)
            return None
        try:
            recipient = await self.client.read(resource_type, recipient_id)
        except NotFoundError:
            logger.warning("Recipient %s of notification %s not found", reference, notification_id)
            return None
        for telecom in recipient.get("telecom") or []:
            if telecom.get("system") == "email":
                return telecom.get("value")
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _attachment_payload(self, inputs: list[AttachmentInput]) -> list[dict[str, Any]]:
        if not inputs:
            return []
        engine = self._require_attachments()
        return engine.build_payload(await engine.process_attachments(inputs))

    async def _create(self, notification: NotificationInput | OneOffNotificationInput) -> tuple[Resource, AnyNotification]:
        payload = await self._attachment_payload(notification.attachments)
        created = await self.client.create(self.mapper.to_external(notification, payload))
        mapped = self.mapper.from_external(created)
        if notification.attachments:
            await self._hydrate(mapped, created)
            logger.info("Persisted notification %s with %d attachments", mapped.id, len(mapped.attachments))
        return created, mapped

    async def persist_notification(self, notification: NotificationInput) -> Notification:
        _, mapped = await self._create(notification)
        return mapped

    async def persist_one_off_notification(self, notification: OneOffNotificationInput) -> OneOffNotification:
        _, mapped = await self._create(notification)
        return mapped

    async def bulk_persist_notifications(self, notifications: list[NotificationInput]) -> list[str]:
        ids = []
        for notification in notifications:
            created, _ = await self._create(notification)
            ids.append(created["id"])
        return ids

    async def _write_changes(self, notification_id: str, changes: dict[str, Any]) -> AnyNotification:
        existing = await self._read(notification_id)
        updated = self.mapper.apply_update(existing, changes)
        version_id = (existing.get("meta") or {}).get("versionId")
        result = await self.client.update(updated, version_id=version_id)
        return self.mapper.from_external(result)

    async def persist_notification_update(
        self, notification_id: str, update: NotificationUpdate
    ) -> Notification:
        return await self._write_changes(notification_id, update.changes())

    async def persist_one_off_notification_update(
        self, notification_id: str, update: OneOffNotificationUpdate
    ) -> OneOffNotification:
        return await self._write_changes(notification_id, update.changes())

    async def _require_status(
        self, notification_id: str, expected: NotificationStatus, check: bool | None
    ) -> AnyNotification | None:
        if not (self.check_preconditions if check is None else check):
            return None
        notification = self.mapper.from_external(await self._read(notification_id))
        if notification.status != expected:
            raise PreconditionError(
                f"Notification {notification_id} is {notification.status}, expected {expected}",
                details={"notification_id": notification_id, "status": notification.status.value},
            )
        return notification

    async def mark_as_sent(self, notification_id: str, check_is_pending: bool | None = None) -> AnyNotification:
        await self._require_status(notification_id, NotificationStatus.PENDING_SEND, check_is_pending)
        return await self._write_changes(
            notification_id, {"status": NotificationStatus.SENT, "sent_at": utcnow()}
        )

    async def mark_as_failed(self, notification_id: str, check_is_pending: bool | None = None) -> AnyNotification:
        await self._require_status(notification_id, NotificationStatus.PENDING_SEND, check_is_pending)
        return await self._write_changes(notification_id, {"status": NotificationStatus.FAILED})

    async def mark_as_read(self, notification_id: str, check_is_sent: bool | None = None) -> Notification:
        notification = await self._require_status(notification_id, NotificationStatus.SENT, check_is_sent)
        if notification is None:
            notification = self.mapper.from_external(await self._read(notification_id))
        if isinstance(notification, OneOffNotification):
            raise PreconditionError("Cannot mark one-off notification as read")
        return await self._write_changes(
            notification_id, {"status": NotificationStatus.READ, "read_at": utcnow()}
        )

    async def cancel_notification(self, notification_id: str) -> None:
        await self.client.delete(COMMUNICATION, notification_id)

    async def store_adapter_and_context_used(
        self, notification_id: str, adapter_key: str, context: Any
    ) -> None:
        await self._write_changes(notification_id, {"adapter_used": adapter_key, "context_used": context})

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def get_attachment_file_record(self, file_id: str) -> AttachmentFileRecord | None:
        return await self._require_attachments().store.get_file(file_id)

    async def find_attachment_file_by_checksum(self, checksum: str) -> AttachmentFileRecord | None:
        found = await self._require_attachments().store.find_by_checksums([checksum])
        return found.get(checksum)

    async def get_attachments(self, notification_id: str) -> list[StoredAttachment]:
        engine = self._require_attachments()
        return await engine.resolve_stored(notification_id, await self._read(notification_id))

    async def delete_notification_attachment(self, notification_id: str, file_id: str) -> None:
        """Detach a file from a notification; the file itself is kept."""
        existing = await self._read(notification_id)
        updated = self.mapper.without_attachment(existing, file_id)
        if updated is None:
            raise AttachmentNotFoundError(
                file_id, f"Attachment {file_id} not found for notification {notification_id}"
            )
        await self.client.update(updated, version_id=(existing.get("meta") or {}).get("versionId"))

    async def delete_attachment_file(self, file_id: str) -> None:
        await self._require_attachments().delete_file(file_id)

    async def get_orphaned_attachment_files(self) -> list[AttachmentFileRecord]:
        return await self._require_attachments().list_orphaned()


def build_backend(
    client: RecordStoreClient,
    settings: Settings | None = None,
    with_attachments: bool = True,
) -> FhirNotificationBackend:
    """Wire a backend, its mapper and its attachment engine from settings."""
    settings = settings or default_settings
    attachments = AttachmentDeduplicator(FhirAttachmentStore(client)) if with_attachments else None
    return FhirNotificationBackend(
        client,
        attachments=attachments,
        mapper=CommunicationMapper(settings.subject_extension_url),
        identifier=settings.backend_identifier,
        check_preconditions=settings.check_preconditions,
        default_page_size=settings.default_page_size,
    )
