"""Attachment store client: blobs as Binary records, metadata as Media records.

Each stored file is a pair:

- a ``Binary`` holding the base64 bytes
- a ``Media`` tagged ``attachment-metadata`` holding filename, size, content
  type, the SHA-256 checksum (as a searchable identifier) and the
  ``Binary/<id>`` locator
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import mimetypes
from datetime import datetime

from fhirnotify.errors.exceptions import NotFoundError
from fhirnotify.mapping.conventions import (
    ATTACHMENT_METADATA_TAG,
    BINARY,
    MEDIA,
    ExtensionUrl,
    IdentifierSystem,
    binary_locator,
    find_extension,
    find_identifier,
    format_instant,
    parse_binary_locator,
    parse_instant,
    utcnow,
)
from fhirnotify.models.attachment import AttachmentFileRecord
from fhirnotify.store.base import RecordStoreClient, Resource

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def calculate_checksum(content: bytes) -> str:
    """SHA-256 hex digest of ``content``; the deduplication key."""
    return hashlib.sha256(content).hexdigest()


def detect_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or DEFAULT_CONTENT_TYPE


class AttachmentFile:
    """Handle on the bytes of one stored blob."""

    def __init__(self, client: RecordStoreClient, locator: str):
        binary_id = parse_binary_locator(locator)
        if not binary_id:
            raise ValueError(f"Invalid Binary URL format: {locator}")
        self.client = client
        self.binary_id = binary_id

    async def read(self) -> bytes:
        binary = await self.client.read(BINARY, self.binary_id)
        data = binary.get("data")
        if not data:
            raise ValueError(f"Binary '{self.binary_id}' has no data")
        return base64.b64decode(data)

    async def url(self) -> str:
        return binary_locator(self.binary_id)

    async def delete(self) -> None:
        await self.client.delete(BINARY, self.binary_id)


class FhirAttachmentStore:
    """Create, read, search and delete attachment blob/metadata pairs."""

    def __init__(self, client: RecordStoreClient):
        self.client = client

    async def upload(
        self,
        content: bytes,
        filename: str,
        content_type: str | None = None,
        checksum: str | None = None,
    ) -> AttachmentFileRecord:
        """Store ``content`` as a new Binary and describe it with a new Media.

        Args:
            content: Raw bytes.
            filename: Original filename; also used to guess a missing content type.
            content_type: MIME type of the bytes.
            checksum: Precomputed SHA-256 of ``content``, if the caller has it.
        """
        checksum = checksum or calculate_checksum(content)
        final_content_type = content_type or detect_content_type(filename)

        binary = await self.client.create({
            "resourceType": BINARY,
            "contentType": final_content_type,
            "data": base64.b64encode(content).decode("ascii"),
        })
        binary_id = binary["id"]
        locator = binary_locator(binary_id)
        storage_identifiers = {"binaryId": binary_id, "url": locator}

        media = await self.client.create({
            "resourceType": MEDIA,
            "status": "completed",
            "meta": {"tag": [{"code": ATTACHMENT_METADATA_TAG}]},
            "content": {
                "contentType": final_content_type,
                "url": locator,
                "size": len(content),
                "title": filename,
                "creation": format_instant(utcnow()),
            },
            "identifier": [
                {"system": IdentifierSystem.ATTACHMENT_CHECKSUM, "value": checksum},
                {"system": IdentifierSystem.BINARY_ID, "value": binary_id},
            ],
            "extension": [
                {"url": ExtensionUrl.STORAGE_IDENTIFIERS, "valueString": json.dumps(storage_identifiers)},
            ],
        })
        logger.info("Uploaded attachment %s (%d bytes) as Media/%s", filename, len(content), media["id"])
        return media_to_record(media)

    async def get_file(self, file_id: str) -> AttachmentFileRecord | None:
        """Read one metadata record; None when it does not exist."""
        try:
            media = await self.client.read(MEDIA, file_id)
        except NotFoundError:
            return None
        return media_to_record(media)

    async def find_by_checksums(self, checksums: list[str]) -> dict[str, AttachmentFileRecord]:
        """Look up metadata records for all ``checksums`` in a single search."""
        unique = list(dict.fromkeys(checksums))
        if not unique:
            return {}
        media_list = await self.client.search(MEDIA, [
            ("identifier", ",".join(f"{IdentifierSystem.ATTACHMENT_CHECKSUM}|{c}" for c in unique)),
            ("_tag", ATTACHMENT_METADATA_TAG),
        ])
        found: dict[str, AttachmentFileRecord] = {}
        for media in media_list:
            record = media_to_record(media)
            if record and record.checksum in unique:
                found.setdefault(record.checksum, record)
        return found

    async def get_files(self, file_ids: list[str]) -> dict[str, AttachmentFileRecord]:
        """Read many metadata records in a single search, keyed by id."""
        unique = list(dict.fromkeys(file_ids))
        if not unique:
            return {}
        media_list = await self.client.search(MEDIA, [("_id", ",".join(unique))])
        records = (media_to_record(media) for media in media_list)
        return {record.id: record for record in records if record}

    async def list_files(self) -> list[AttachmentFileRecord]:
        media_list = await self.client.search(MEDIA, [("_tag", ATTACHMENT_METADATA_TAG)])
        records = (media_to_record(media) for media in media_list)
        return [record for record in records if record]

    async def delete_file(self, record: AttachmentFileRecord) -> None:
        """Delete the blob, then its metadata record."""
        if record.binary_id:
            try:
                await self.client.delete(BINARY, record.binary_id)
            except NotFoundError:
                logger.warning("Binary %s for Media/%s was already gone", record.binary_id, record.id)
        await self.client.delete(MEDIA, record.id)

    def open(self, record: AttachmentFileRecord) -> AttachmentFile:
        return AttachmentFile(self.client, binary_locator(record.binary_id))


def media_to_record(media: Resource) -> AttachmentFileRecord | None:
    """Decode a Media metadata record; None when it carries no content section."""
    media_id = media.get("id")
    if not media_id:
        raise ValueError("Invalid Media resource: missing id")
    content = media.get("content")
    if not content:
        return None

    binary_id = find_identifier(media, IdentifierSystem.BINARY_ID) or parse_binary_locator(content.get("url")) or ""
    storage_ext = find_extension(media, ExtensionUrl.STORAGE_IDENTIFIERS)
    storage_identifiers = json.loads(storage_ext["valueString"]) if storage_ext else {}
    storage_identifiers.setdefault("binaryId", binary_id)
    storage_identifiers.setdefault("url", content.get("url") or "")
    storage_identifiers["mediaId"] = media_id

    created = parse_instant(content.get("creation"))
    updated = parse_instant((media.get("meta") or {}).get("lastUpdated"))
    fallback: datetime = updated or created or utcnow()
    return AttachmentFileRecord(
        id=media_id,
        filename=content.get("title") or "untitled",
        content_type=content.get("contentType") or DEFAULT_CONTENT_TYPE,
        size=content.get("size") or 0,
        checksum=find_identifier(media, IdentifierSystem.ATTACHMENT_CHECKSUM) or "",
        binary_id=binary_id,
        storage_identifiers=storage_identifiers,
        created_at=created or fallback,
        updated_at=fallback,
    )
