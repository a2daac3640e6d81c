"""Content-addressed attachment deduplication, orphan scanning and guarded deletion."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fhirnotify.attachments.store import FhirAttachmentStore, calculate_checksum
from fhirnotify.errors.exceptions import AttachmentInUseError, AttachmentNotFoundError
from fhirnotify.mapping.conventions import (
    COMMUNICATION,
    NOTIFICATION_TAG,
    attachment_locators,
    format_instant,
    media_locator,
)
from fhirnotify.models.attachment import (
    AttachmentDescriptor,
    AttachmentFileRecord,
    AttachmentInput,
    ExistingAttachment,
    NewAttachment,
    StoredAttachment,
)
from fhirnotify.store.base import Resource

logger = logging.getLogger(__name__)


class AttachmentDeduplicator:
    """Resolves attachment inputs to stored files, uploading only unseen content.

    Identical bytes always resolve to one stored file: checksums are looked up
    in a single batched search per call, and content missing from the store is
    uploaded once per distinct checksum.
    """

    def __init__(self, store: FhirAttachmentStore):
        self.store = store

    async def process_attachments(self, inputs: list[AttachmentInput]) -> list[AttachmentDescriptor]:
        """Resolve ``inputs`` into descriptors, in input order.

        Raises:
            AttachmentNotFoundError: If any referenced file does not exist. No
                upload is attempted in that case.
        """
        references = [(i, a) for i, a in enumerate(inputs) if isinstance(a, ExistingAttachment)]
        uploads = [(i, a) for i, a in enumerate(inputs) if isinstance(a, NewAttachment)]
        resolved: dict[int, AttachmentDescriptor] = {}

        referenced_records = await asyncio.gather(
            *(self.store.get_file(attachment.file_id) for _, attachment in references)
        )
        for (index, attachment), record in zip(references, referenced_records):
            if record is None:
                raise AttachmentNotFoundError(attachment.file_id)
            resolved[index] = AttachmentDescriptor(record=record, description=attachment.description, reused=True)

        checksums = await asyncio.gather(
            *(asyncio.to_thread(calculate_checksum, attachment.content) for _, attachment in uploads)
        )
        existing = await self.store.find_by_checksums(list(checksums))

        to_upload: dict[str, NewAttachment] = {}
        for (_, attachment), checksum in zip(uploads, checksums):
            if checksum not in existing:
                to_upload.setdefault(checksum, attachment)
        uploaded_records = await asyncio.gather(
            *(
                self.store.upload(a.content, a.filename, a.content_type, checksum=checksum)
                for checksum, a in to_upload.items()
            )
        )
        uploaded = dict(zip(to_upload, uploaded_records))

        for (index, attachment), checksum in zip(uploads, checksums):
            record = existing.get(checksum) or uploaded[checksum]
            first_upload = to_upload.get(checksum) is attachment
            if not first_upload:
                logger.info("Reusing stored attachment Media/%s for %s", record.id, attachment.filename)
            resolved[index] = AttachmentDescriptor(
                record=record,
                description=attachment.description,
                reused=not first_upload,
            )

        return [resolved[index] for index in range(len(inputs))]

    @staticmethod
    def build_payload(descriptors: list[AttachmentDescriptor]) -> list[dict[str, Any]]:
        """Render descriptors as Communication payload entries."""
        return [
            {
                "contentAttachment": {
                    "contentType": d.record.content_type,
                    "url": media_locator(d.record.id),
                    "size": d.record.size,
                    "title": d.description or d.record.filename,
                    "creation": format_instant(d.record.created_at),
                },
            }
            for d in descriptors
        ]

    async def resolve_stored(self, notification_id: str, resource: Resource) -> list[StoredAttachment]:
        """Hydrate the attachments of one notification record with one metadata search."""
        locators = attachment_locators(resource)
        if not locators:
            return []
        records = await self.store.get_files([media_id for media_id, _ in locators])

        attachments = []
        seen: dict[str, int] = {}
        for media_id, title in locators:
            record = records.get(media_id)
            if record is None:
                logger.warning("Notification %s references missing attachment Media/%s", notification_id, media_id)
                continue
            # A file attached more than once gets a per-occurrence suffix after the first
            occurrence = seen.get(record.id, 0)
            seen[record.id] = occurrence + 1
            attachment_id = f"{notification_id}-{record.id}"
            if occurrence:
                attachment_id = f"{attachment_id}-{occurrence}"
            attachments.append(StoredAttachment(
                id=attachment_id,
                file_id=record.id,
                filename=record.filename,
                content_type=record.content_type,
                size=record.size,
                checksum=record.checksum,
                description=title,
                created_at=record.created_at,
                storage_metadata=record.storage_identifiers,
                file=self.store.open(record),
            ))
        return attachments

    async def _referenced_file_ids(self) -> set[str]:
        communications = await self.store.client.search(COMMUNICATION, [("_tag", NOTIFICATION_TAG)])
        return {
            media_id
            for communication in communications
            for media_id, _ in attachment_locators(communication)
        }

    async def list_orphaned(self) -> list[AttachmentFileRecord]:
        """Return metadata records no notification references.

        Full scan of metadata and notification records; meant for offline
        maintenance rather than request paths.
        """
        records = await self.store.list_files()
        referenced = await self._referenced_file_ids()
        return [record for record in records if record.id not in referenced]

    async def delete_file(self, file_id: str) -> None:
        """Delete an unreferenced file: its metadata record and its blob.

        Raises:
            AttachmentNotFoundError: If no such file exists.
            AttachmentInUseError: If any notification still references it.
        """
        record = await self.store.get_file(file_id)
        if record is None:
            raise AttachmentNotFoundError(file_id)
        if file_id in await self._referenced_file_ids():
            raise AttachmentInUseError(file_id)
        await self.store.delete_file(record)
        logger.info("Deleted orphaned attachment Media/%s", file_id)
