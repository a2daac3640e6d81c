"""Bidirectional mapping between notifications and FHIR Communication records.

Layout of a notification record:

- ``identifier``: searchable scalars (body/subject template, adapter used,
  git commit sha), one ``{system, value}`` pair per field
- ``meta.tag``: ordered classification codes, see ``TagSlot``
- ``note[0].text``: JSON-encoded context parameters
- ``recipient[0].reference``: regular recipient; one-off recipients live in
  three extensions instead
- ``sent``: the due time while pending, the actual send time once completed
- ``payload[0]``: body template, with the subject template as an extension;
  further payload entries are attachments located by ``Media/<id>``
"""

from __future__ import annotations

import copy
import json
from datetime import datetime
from typing import Any

from fhirnotify.errors.exceptions import MappingError, PreconditionError
from fhirnotify.mapping.conventions import (
    COMMUNICATION,
    NOTIFICATION_TAG,
    ONE_OFF_EXTENSIONS,
    REQUIRED_TAG_COUNT,
    ExtensionUrl,
    IdentifierSystem,
    TagSlot,
    build_tags,
    domain_status_for,
    find_extension,
    find_identifier,
    format_instant,
    parse_instant,
    parse_media_locator,
    store_status_for,
    utcnow,
)
from fhirnotify.models.enums import CommunicationStatus, NotificationStatus, NotificationType
from fhirnotify.models.notification import (
    AnyNotification,
    Notification,
    NotificationInput,
    OneOffNotification,
    OneOffNotificationInput,
)
from fhirnotify.store.base import Resource


# Identifier-backed fields, in the order they are written
_IDENTIFIER_FIELDS: tuple[tuple[str, str], ...] = (
    ("body_template", IdentifierSystem.BODY_TEMPLATE),
    ("subject_template", IdentifierSystem.SUBJECT_TEMPLATE),
    ("adapter_used", IdentifierSystem.ADAPTER_USED),
    ("git_commit_sha", IdentifierSystem.GIT_COMMIT_SHA),
)

_ONE_OFF_FIELDS: tuple[tuple[str, str], ...] = (
    ("email_or_phone", ExtensionUrl.EMAIL_OR_PHONE),
    ("first_name", ExtensionUrl.FIRST_NAME),
    ("last_name", ExtensionUrl.LAST_NAME),
)


class CommunicationMapper:
    """Encodes notifications into Communication records and decodes them back."""

    def __init__(self, subject_extension_url: str | None = None):
        self.subject_extension_url = subject_extension_url

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def to_external(
        self,
        notification: NotificationInput | OneOffNotificationInput,
        attachment_payload: list[dict[str, Any]] | None = None,
        now: datetime | None = None,
    ) -> Resource:
        """Build a new Communication record for ``notification``.

        Args:
            notification: A regular or one-off notification input.
            attachment_payload: Payload entries produced by the attachment engine.
            now: Creation instant; a null ``send_after`` makes the record due at it.
        """
        now = now or utcnow()
        one_off = isinstance(notification, OneOffNotificationInput)

        payload: list[dict[str, Any]] = []
        if notification.body_template:
            payload.append(self._body_payload(notification.body_template, notification.subject_template))
        payload.extend(attachment_payload or [])

        identifiers = []
        for name, system in _IDENTIFIER_FIELDS:
            value = getattr(notification, name, None)
            if value:
                identifiers.append({"system": system, "value": value})

        extensions: list[dict[str, Any]] = []
        if notification.send_after is not None:
            extensions.append({
                "url": ExtensionUrl.SEND_AFTER,
                "valueDateTime": format_instant(notification.send_after),
            })

        resource: Resource = {
            "resourceType": COMMUNICATION,
            "status": CommunicationStatus.IN_PROGRESS.value,
            "sent": format_instant(notification.send_after or now),
            "payload": payload,
            "identifier": identifiers,
            "note": [{"text": json.dumps(notification.context_parameters)}],
            "meta": {
                "tag": build_tags(notification.context_name, notification.notification_type.value, one_off),
            },
        }
        if notification.title is not None:
            resource["topic"] = {"text": notification.title}

        if one_off:
            for name, url in _ONE_OFF_FIELDS:
                extensions.append({"url": url, "valueString": getattr(notification, name)})
        else:
            resource["recipient"] = [{"reference": notification.user_id}]

        if extensions:
            resource["extension"] = extensions
        return resource

    def _body_payload(self, body_template: str, subject_template: str | None) -> dict[str, Any]:
        entry: dict[str, Any] = {"contentString": body_template}
        if subject_template and self.subject_extension_url:
            entry["extension"] = [{"url": self.subject_extension_url, "valueString": subject_template}]
        return entry

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def from_external(self, resource: Resource) -> AnyNotification:
        """Decode a Communication record.

        A record carrying all three one-off extensions is decoded as a one-off
        notification even when it also has a recipient reference.

        Raises:
            MappingError: If the record is not a well-formed notification record.
        """
        resource_id = resource.get("id")
        if not resource_id:
            raise MappingError("Communication record has no id")

        codes = [tag.get("code") for tag in (resource.get("meta") or {}).get("tag") or []]
        if len(codes) < REQUIRED_TAG_COUNT:
            raise MappingError(
                f"Communication '{resource_id}' has {len(codes)} tags, "
                f"expected at least {REQUIRED_TAG_COUNT}",
                resource_id,
            )
        if codes[TagSlot.MARKER] != NOTIFICATION_TAG:
            raise MappingError(f"Communication '{resource_id}' is not tagged as a notification", resource_id)
        context_name = codes[TagSlot.CONTEXT_NAME]
        if not context_name:
            raise MappingError(f"Communication '{resource_id}' has an empty context name tag", resource_id)
        try:
            notification_type = NotificationType(codes[TagSlot.NOTIFICATION_TYPE])
        except ValueError:
            raise MappingError(
                f"Communication '{resource_id}' has unknown notification type "
                f"'{codes[TagSlot.NOTIFICATION_TYPE]}'",
                resource_id,
            ) from None

        read_at = _extension_instant(resource, ExtensionUrl.READ_AT)
        store_status = resource.get("status")
        status = domain_status_for(store_status, read_at)
        if status is None:
            raise MappingError(f"Communication '{resource_id}' has unmapped status '{store_status}'", resource_id)

        context_parameters = _load_json(_first_note(resource), resource_id, default={})
        if not isinstance(context_parameters, dict):
            raise MappingError(f"Communication '{resource_id}' context parameters are not an object", resource_id)
        context_used_ext = find_extension(resource, ExtensionUrl.CONTEXT_USED)
        context_used = _load_json(
            context_used_ext.get("valueString") if context_used_ext else None,
            resource_id,
            default=None,
        )

        payload = resource.get("payload") or []
        body_entry = payload[0] if payload and "contentString" in payload[0] else {}
        body_template = find_identifier(resource, IdentifierSystem.BODY_TEMPLATE) or body_entry.get("contentString") or ""
        subject_template = find_identifier(resource, IdentifierSystem.SUBJECT_TEMPLATE) or self._payload_subject(body_entry)

        sent = parse_instant(resource.get("sent"))
        meta = resource.get("meta") or {}
        last_updated = parse_instant(meta.get("lastUpdated"))

        fields: dict[str, Any] = {
            "id": resource_id,
            "notification_type": notification_type,
            "title": (resource.get("topic") or {}).get("text"),
            "body_template": body_template,
            "subject_template": subject_template,
            "context_name": context_name,
            "context_parameters": context_parameters,
            "send_after": _extension_instant(resource, ExtensionUrl.SEND_AFTER),
            "git_commit_sha": find_identifier(resource, IdentifierSystem.GIT_COMMIT_SHA),
            "status": status,
            "adapter_used": find_identifier(resource, IdentifierSystem.ADAPTER_USED),
            "context_used": context_used,
            "sent_at": sent if store_status == CommunicationStatus.COMPLETED else None,
            "read_at": read_at,
            # The store keeps no creation time; last modification stands in for it
            "created_at": last_updated,
            "updated_at": last_updated,
            "version_id": meta.get("versionId"),
        }

        one_off_values = [_extension_string(resource, url) for url in ONE_OFF_EXTENSIONS]
        if all(one_off_values):
            email_or_phone, first_name, last_name = one_off_values
            return OneOffNotification(
                **fields,
                email_or_phone=email_or_phone,
                first_name=first_name,
                last_name=last_name,
            )

        recipients = resource.get("recipient") or []
        reference = recipients[0].get("reference") if recipients else None
        if not reference:
            raise MappingError(f"Communication '{resource_id}' has no recipient", resource_id)
        return Notification(**fields, user_id=reference)

    def _payload_subject(self, body_entry: dict[str, Any]) -> str | None:
        if not self.subject_extension_url:
            return None
        for extension in body_entry.get("extension") or []:
            if extension.get("url") == self.subject_extension_url:
                return extension.get("valueString")
        return None

    # ------------------------------------------------------------------
    # Partial update
    # ------------------------------------------------------------------

    def apply_update(
        self,
        resource: Resource,
        changes: dict[str, Any],
        now: datetime | None = None,
    ) -> Resource:
        """Return a copy of ``resource`` with the field-level ``changes`` applied.

        Keys present with ``None`` unset the field; absent keys are untouched.

        Raises:
            PreconditionError: If the change asks for a status with no stored form.
        """
        now = now or utcnow()
        updated = copy.deepcopy(resource)

        for name, system in _IDENTIFIER_FIELDS:
            if name in changes:
                _upsert_identifier(updated, system, changes[name])
        if "body_template" in changes:
            self._set_body(updated, changes["body_template"])
        if "subject_template" in changes:
            self._set_payload_subject(updated, changes["subject_template"])

        if "title" in changes:
            if changes["title"] is not None:
                updated["topic"] = {"text": changes["title"]}
            else:
                updated.pop("topic", None)
        if "context_name" in changes:
            _set_tag(updated, TagSlot.CONTEXT_NAME, changes["context_name"])
        if "notification_type" in changes:
            _set_tag(updated, TagSlot.NOTIFICATION_TYPE, NotificationType(changes["notification_type"]).value)
        if "context_parameters" in changes:
            notes = updated.get("note") or [{}]
            notes[0] = {**notes[0], "text": json.dumps(changes["context_parameters"])}
            updated["note"] = notes
        if "context_used" in changes:
            value = changes["context_used"]
            _upsert_extension(
                updated,
                ExtensionUrl.CONTEXT_USED,
                None if value is None else {"valueString": json.dumps(value)},
            )
        if "read_at" in changes:
            _upsert_instant_extension(updated, ExtensionUrl.READ_AT, changes["read_at"])
        if "user_id" in changes:
            updated["recipient"] = [{"reference": changes["user_id"]}]
        for name, url in _ONE_OFF_FIELDS:
            if name in changes:
                _upsert_extension(updated, url, {"valueString": changes[name]})

        if "status" in changes:
            self._set_status(updated, NotificationStatus(changes["status"]), "read_at" in changes, now)

        if "send_after" in changes:
            send_after = changes["send_after"]
            _upsert_instant_extension(updated, ExtensionUrl.SEND_AFTER, send_after)
            if updated.get("status") == CommunicationStatus.IN_PROGRESS:
                updated["sent"] = format_instant(send_after or now)
        if changes.get("sent_at") is not None:
            updated["sent"] = format_instant(changes["sent_at"])

        updated["meta"] = {**(updated.get("meta") or {}), "lastUpdated": format_instant(now)}
        return updated

    def _set_status(self, resource: Resource, status: NotificationStatus, read_at_given: bool, now: datetime) -> None:
        store_status = store_status_for(status)
        if store_status is None:
            raise PreconditionError(
                f"Status {status} cannot be stored; cancel the notification instead",
                details={"status": status.value},
            )
        resource["status"] = store_status.value
        if status == NotificationStatus.READ:
            if not read_at_given and find_extension(resource, ExtensionUrl.READ_AT) is None:
                _upsert_instant_extension(resource, ExtensionUrl.READ_AT, now)
        elif not read_at_given:
            _upsert_extension(resource, ExtensionUrl.READ_AT, None)

    def _set_body(self, resource: Resource, body_template: str) -> None:
        payload = resource.get("payload") or []
        if payload and "contentString" in payload[0]:
            payload[0] = {**payload[0], "contentString": body_template}
        else:
            payload.insert(0, {"contentString": body_template})
        resource["payload"] = payload

    def _set_payload_subject(self, resource: Resource, subject_template: str | None) -> None:
        payload = resource.get("payload") or []
        if not self.subject_extension_url or not payload or "contentString" not in payload[0]:
            return
        body_entry = dict(payload[0])
        extensions = [
            ext for ext in body_entry.get("extension") or []
            if ext.get("url") != self.subject_extension_url
        ]
        if subject_template is not None:
            extensions.append({"url": self.subject_extension_url, "valueString": subject_template})
        if extensions:
            body_entry["extension"] = extensions
        else:
            body_entry.pop("extension", None)
        payload[0] = body_entry
        resource["payload"] = payload

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def without_attachment(self, resource: Resource, file_id: str) -> Resource | None:
        """Return a copy of ``resource`` without the payload entry for ``file_id``.

        Returns None when the record does not reference the file.
        """
        payload = resource.get("payload") or []
        kept = [
            item for item in payload
            if parse_media_locator((item.get("contentAttachment") or {}).get("url")) != file_id
        ]
        if len(kept) == len(payload):
            return None
        updated = copy.deepcopy(resource)
        updated["payload"] = kept
        return updated


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------


def _first_note(resource: Resource) -> str | None:
    notes = resource.get("note") or []
    return notes[0].get("text") if notes else None


def _load_json(text: str | None, resource_id: str, default: Any) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MappingError(f"Communication '{resource_id}' holds malformed JSON: {exc}", resource_id) from exc


def _extension_string(resource: Resource, url: str) -> str | None:
    extension = find_extension(resource, url)
    return extension.get("valueString") if extension else None


def _extension_instant(resource: Resource, url: str) -> datetime | None:
    extension = find_extension(resource, url)
    return parse_instant(extension.get("valueDateTime")) if extension else None


def _upsert_identifier(resource: Resource, system: str, value: str | None) -> None:
    identifiers = [i for i in resource.get("identifier") or [] if i.get("system") != system]
    if value is not None:
        identifiers.append({"system": system, "value": value})
    resource["identifier"] = identifiers


def _upsert_extension(resource: Resource, url: str, value: dict[str, Any] | None) -> None:
    extensions = resource.get("extension") or []
    index = next((i for i, ext in enumerate(extensions) if ext.get("url") == url), None)
    if value is None:
        if index is not None:
            extensions.pop(index)
    elif index is not None:
        extensions[index] = {"url": url, **value}
    else:
        extensions.append({"url": url, **value})
    if extensions:
        resource["extension"] = extensions
    else:
        resource.pop("extension", None)


def _upsert_instant_extension(resource: Resource, url: str, value: datetime | None) -> None:
    _upsert_extension(resource, url, None if value is None else {"valueDateTime": format_instant(value)})


def _set_tag(resource: Resource, slot: TagSlot, code: str) -> None:
    tags = (resource.get("meta") or {}).get("tag") or []
    if len(tags) <= slot:
        raise MappingError(f"Communication '{resource.get('id')}' has no tag at position {int(slot)}", resource.get("id"))
    tags[slot] = {**tags[slot], "code": code}
