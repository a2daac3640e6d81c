"""Tests for FhirNotificationBackend against the in-memory record store."""

import logging

import pytest

from fhirnotify.backend import FhirNotificationBackend, build_backend
from fhirnotify.errors.exceptions import (
    AttachmentInUseError,
    AttachmentNotFoundError,
    MappingError,
    NotFoundError,
    PreconditionError,
    UnsupportedFilterError,
)
from fhirnotify.models.attachment import ExistingAttachment, NewAttachment
from fhirnotify.models.enums import NotificationStatus, NotificationType
from fhirnotify.models.filters import AndFilter, FieldFilter, NotFilter, OrFilter
from fhirnotify.models.notification import (
    Notification,
    NotificationUpdate,
    OneOffNotification,
    OneOffNotificationUpdate,
)


class TestIdentity:
    def test_backend_identifier_comes_from_settings(self, backend):
        assert backend.get_backend_identifier() == "test-fhir"

    def test_capabilities_come_from_compiler(self, backend):
        assert backend.get_filter_capabilities().logical_or is False


# ---------------------------------------------------------------------------
# Persist
# ---------------------------------------------------------------------------


class TestPersist:
    @pytest.mark.asyncio
    async def test_persist_returns_mapped_notification(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())

        assert isinstance(notification, Notification)
        assert notification.id
        assert notification.status == NotificationStatus.PENDING_SEND
        assert notification.user_id == "Patient/123"
        assert notification.attachments == []

    @pytest.mark.asyncio
    async def test_null_send_after_is_pending_now(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification(send_after=None))

        pending = await backend.get_all_pending_notifications()
        future = await backend.get_all_future_notifications()

        assert [n.id for n in pending] == [notification.id]
        assert future == []

    @pytest.mark.asyncio
    async def test_scheduled_notification_is_future(self, backend, new_notification, future):
        notification = await backend.persist_notification(new_notification(send_after=future))

        assert await backend.get_all_pending_notifications() == []
        assert [n.id for n in await backend.get_all_future_notifications()] == [notification.id]

    @pytest.mark.asyncio
    async def test_persist_one_off(self, backend, new_notification, new_one_off):
        await backend.persist_notification(new_notification())
        one_off = await backend.persist_one_off_notification(new_one_off())

        assert isinstance(one_off, OneOffNotification)
        assert [n.id for n in await backend.get_all_one_off_notifications()] == [one_off.id]
        assert len(await backend.get_all_notifications()) == 2

    @pytest.mark.asyncio
    async def test_bulk_persist_returns_ids_in_order(self, backend, new_notification):
        ids = await backend.bulk_persist_notifications([
            new_notification(context_name="first"),
            new_notification(context_name="second"),
        ])

        assert len(ids) == 2
        assert [(await backend.get_notification(i)).context_name for i in ids] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_persist_with_attachments_hydrates_them(self, backend, new_notification):
        notification = await backend.persist_notification(
            new_notification(attachments=[NewAttachment(content=b"hello", filename="hello.txt")])
        )

        assert len(notification.attachments) == 1
        attachment = notification.attachments[0]
        assert attachment.filename == "hello.txt"
        assert attachment.id == f"{notification.id}-{attachment.file_id}"
        assert await attachment.file.read() == b"hello"

    @pytest.mark.asyncio
    async def test_notifications_share_identical_attachments(self, backend, store, new_notification):
        first = await backend.persist_notification(
            new_notification(attachments=[NewAttachment(content=b"hello", filename="a.txt")])
        )
        second = await backend.persist_notification(
            new_notification(attachments=[NewAttachment(content=b"hello", filename="b.txt")])
        )

        assert len(store.resources["Media"]) == 1
        assert len(store.resources["Binary"]) == 1
        assert first.attachments[0].file_id == second.attachments[0].file_id

    @pytest.mark.asyncio
    async def test_identical_attachments_in_one_persist(self, backend, store, new_notification):
        notification = await backend.persist_notification(
            new_notification(attachments=[
                NewAttachment(content=b"hello", filename="a.txt"),
                NewAttachment(content=b"hello", filename="b.txt"),
            ])
        )

        assert len(store.calls_to("create", "Binary")) == 1
        assert len(store.calls_to("create", "Media")) == 1
        media_id = next(iter(store.resources["Media"]))
        payload = store.resources["Communication"][notification.id]["payload"]
        urls = [item["contentAttachment"]["url"] for item in payload if "contentAttachment" in item]
        assert urls == [f"Media/{media_id}", f"Media/{media_id}"]
        assert [a.file_id for a in notification.attachments] == [media_id, media_id]
        assert len({a.id for a in notification.attachments}) == 2

    @pytest.mark.asyncio
    async def test_missing_attachment_reference_creates_nothing(self, backend, store, new_notification):
        with pytest.raises(AttachmentNotFoundError):
            await backend.persist_notification(
                new_notification(attachments=[ExistingAttachment(file_id="media-404")])
            )

        assert store.calls_to("create") == []

    @pytest.mark.asyncio
    async def test_attachments_need_a_configured_store(self, store, new_notification):
        backend = FhirNotificationBackend(store)

        with pytest.raises(PreconditionError, match="not configured"):
            await backend.persist_notification(
                new_notification(attachments=[NewAttachment(content=b"x", filename="x.txt")])
            )
        with pytest.raises(PreconditionError):
            await backend.get_orphaned_attachment_files()

        assert (await backend.persist_notification(new_notification())).attachments == []


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_pagination(self, backend, new_notification):
        ids = await backend.bulk_persist_notifications([new_notification() for _ in range(3)])

        first_page = await backend.get_notifications(page=0, page_size=2)
        second_page = await backend.get_notifications(page=1, page_size=2)

        assert [n.id for n in first_page] == ids[:2]
        assert [n.id for n in second_page] == ids[2:]

    @pytest.mark.asyncio
    async def test_paged_pending(self, backend, new_notification):
        await backend.bulk_persist_notifications([new_notification() for _ in range(3)])

        assert len(await backend.get_pending_notifications(page=0, page_size=2)) == 2
        assert len(await backend.get_pending_notifications(page=1, page_size=2)) == 1

    @pytest.mark.asyncio
    async def test_future_from_user(self, backend, new_notification, new_one_off, future):
        mine = await backend.persist_notification(new_notification(user_id="Patient/1", send_after=future))
        await backend.persist_notification(new_notification(user_id="Patient/2", send_after=future))
        await backend.persist_one_off_notification(new_one_off(send_after=future))

        assert [n.id for n in await backend.get_all_future_notifications_from_user("Patient/1")] == [mine.id]
        assert [n.id for n in await backend.get_future_notifications_from_user("Patient/1", 0, 10)] == [mine.id]

    @pytest.mark.asyncio
    async def test_in_app_unread(self, backend, new_notification):
        in_app = await backend.persist_notification(
            new_notification(user_id="Patient/1", notification_type=NotificationType.IN_APP)
        )
        await backend.persist_notification(new_notification(user_id="Patient/1"))
        await backend.mark_as_sent(in_app.id)

        unread = await backend.filter_all_in_app_unread_notifications("Patient/1")
        assert [n.id for n in unread] == [in_app.id]
        assert len(await backend.filter_in_app_unread_notifications("Patient/1", 0, 10)) == 1

        await backend.mark_as_read(in_app.id)
        assert await backend.filter_all_in_app_unread_notifications("Patient/1") == []

    @pytest.mark.asyncio
    async def test_bulk_scan_skips_unmappable_records(self, backend, store, new_notification, caplog):
        good = await backend.persist_notification(new_notification())
        store.put({
            "resourceType": "Communication",
            "id": "broken",
            "status": "in-progress",
            "meta": {"tag": [{"code": "notification"}]},
        })

        with caplog.at_level(logging.WARNING, logger="fhirnotify.backend"):
            notifications = await backend.get_all_notifications()

        assert [n.id for n in notifications] == [good.id]
        assert "broken" in caplog.text

    @pytest.mark.asyncio
    async def test_single_read_of_unmappable_record_raises(self, backend, store):
        store.put({"resourceType": "Communication", "id": "broken", "meta": {"tag": []}})

        with pytest.raises(MappingError):
            await backend.get_notification("broken")


class TestFilterNotifications:
    @pytest.mark.asyncio
    async def test_and_of_tag_constraints(self, backend, new_notification):
        match = await backend.persist_notification(new_notification(context_name="welcome"))
        await backend.persist_notification(new_notification(context_name="reminder"))
        await backend.persist_notification(
            new_notification(context_name="welcome", notification_type=NotificationType.SMS)
        )

        results = await backend.filter_notifications(
            AndFilter([
                FieldFilter(notification_type=NotificationType.EMAIL),
                FieldFilter(context_name="welcome"),
            ]),
            page=0,
            page_size=10,
        )

        assert [n.id for n in results] == [match.id]

    @pytest.mark.asyncio
    async def test_not_filter(self, backend, new_notification):
        await backend.persist_notification(new_notification(user_id="Patient/1"))
        other = await backend.persist_notification(new_notification(user_id="Patient/2"))

        results = await backend.filter_notifications(NotFilter(FieldFilter(user_id="Patient/1")), 0, 10)

        assert [n.id for n in results] == [other.id]

    @pytest.mark.asyncio
    async def test_user_id_list_matches_any_recipient(self, backend, new_notification):
        first = await backend.persist_notification(new_notification(user_id="Patient/1"))
        second = await backend.persist_notification(new_notification(user_id="Patient/2"))
        await backend.persist_notification(new_notification(user_id="Patient/3"))

        results = await backend.filter_notifications(FieldFilter(user_id=["Patient/1", "Patient/2"]), 0, 10)

        assert [n.id for n in results] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_status_filter_after_transition(self, backend, new_notification):
        sent = await backend.persist_notification(new_notification())
        await backend.persist_notification(new_notification())
        await backend.mark_as_sent(sent.id)

        results = await backend.filter_notifications(FieldFilter(status=NotificationStatus.SENT), 0, 10)

        assert [n.id for n in results] == [sent.id]

    @pytest.mark.asyncio
    async def test_template_containing_comma(self, backend, new_notification):
        match = await backend.persist_notification(new_notification(body_template="Hello, {{ name }}"))
        await backend.persist_notification(new_notification(body_template="Hello"))

        results = await backend.filter_notifications(FieldFilter(body_template="Hello, {{ name }}"), 0, 10)

        assert [n.id for n in results] == [match.id]

    @pytest.mark.asyncio
    async def test_default_page_size(self, backend, store):
        await backend.filter_notifications(FieldFilter())

        assert ("_count", "25") in store.calls_to("search")[-1][2]

    @pytest.mark.asyncio
    async def test_or_is_rejected_before_the_store_is_contacted(self, backend, store):
        with pytest.raises(UnsupportedFilterError):
            await backend.filter_notifications(OrFilter([FieldFilter(user_id="a")]), 0, 10)

        assert store.calls == []


# ---------------------------------------------------------------------------
# Status transitions and updates
# ---------------------------------------------------------------------------


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_mark_as_sent(self, backend, store, new_notification):
        notification = await backend.persist_notification(new_notification())

        sent = await backend.mark_as_sent(notification.id)

        assert sent.status == NotificationStatus.SENT
        assert sent.sent_at is not None
        assert store.calls_to("update")[-1][2] == "1"

    @pytest.mark.asyncio
    async def test_mark_as_sent_twice_with_check_fails(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())
        await backend.mark_as_sent(notification.id)

        with pytest.raises(PreconditionError):
            await backend.mark_as_sent(notification.id, check_is_pending=True)

    @pytest.mark.asyncio
    async def test_mark_as_sent_without_check_succeeds(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())
        await backend.mark_as_failed(notification.id)

        sent = await backend.mark_as_sent(notification.id, check_is_pending=False)

        assert sent.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_check_default_comes_from_settings(self, store, test_settings, new_notification):
        backend = build_backend(store, test_settings.model_copy(update={"check_preconditions": False}))
        notification = await backend.persist_notification(new_notification())
        await backend.mark_as_sent(notification.id)

        assert (await backend.mark_as_sent(notification.id)).status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_mark_as_failed(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())

        failed = await backend.mark_as_failed(notification.id)

        assert failed.status == NotificationStatus.FAILED
        assert await backend.get_all_pending_notifications() == []

    @pytest.mark.asyncio
    async def test_mark_as_read(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())
        await backend.mark_as_sent(notification.id)

        read = await backend.mark_as_read(notification.id)

        assert read.status == NotificationStatus.READ
        assert read.read_at is not None
        assert read.sent_at is not None

    @pytest.mark.asyncio
    async def test_mark_pending_as_read_with_check_fails(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())

        with pytest.raises(PreconditionError):
            await backend.mark_as_read(notification.id, check_is_sent=True)

    @pytest.mark.asyncio
    async def test_one_off_cannot_be_marked_read(self, backend, new_one_off):
        one_off = await backend.persist_one_off_notification(new_one_off())
        await backend.mark_as_sent(one_off.id)

        with pytest.raises(PreconditionError, match="one-off"):
            await backend.mark_as_read(one_off.id)
        with pytest.raises(PreconditionError, match="one-off"):
            await backend.mark_as_read(one_off.id, check_is_sent=False)

    @pytest.mark.asyncio
    async def test_cancel_deletes_the_record(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())

        await backend.cancel_notification(notification.id)

        assert await backend.get_notification(notification.id) is None
        with pytest.raises(NotFoundError):
            await backend.cancel_notification(notification.id)


class TestUpdates:
    @pytest.mark.asyncio
    async def test_partial_update(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())

        updated = await backend.persist_notification_update(
            notification.id,
            NotificationUpdate(title="Reminder", subject_template=None),
        )

        assert updated.title == "Reminder"
        assert updated.subject_template is None
        assert updated.body_template == notification.body_template
        assert updated.context_parameters == notification.context_parameters
        assert updated.version_id == "2"

    @pytest.mark.asyncio
    async def test_reschedule(self, backend, new_notification, future):
        notification = await backend.persist_notification(new_notification())

        await backend.persist_notification_update(notification.id, NotificationUpdate(send_after=future))

        assert await backend.get_all_pending_notifications() == []
        assert len(await backend.get_all_future_notifications()) == 1

    @pytest.mark.asyncio
    async def test_one_off_update(self, backend, new_one_off):
        one_off = await backend.persist_one_off_notification(new_one_off())

        updated = await backend.persist_one_off_notification_update(
            one_off.id, OneOffNotificationUpdate(email_or_phone="other@example.com")
        )

        assert updated.email_or_phone == "other@example.com"
        assert updated.first_name == "Grace"

    @pytest.mark.asyncio
    async def test_store_adapter_and_context_used(self, backend, new_notification):
        notification = await backend.persist_notification(new_notification())

        await backend.store_adapter_and_context_used(notification.id, "fhir-email", {"first_name": "Ada"})

        stored = await backend.get_notification(notification.id)
        assert stored.adapter_used == "fhir-email"
        assert stored.context_used == {"first_name": "Ada"}

    @pytest.mark.asyncio
    async def test_update_of_missing_notification(self, backend):
        with pytest.raises(NotFoundError):
            await backend.persist_notification_update("communication-404", NotificationUpdate(title="x"))


# ---------------------------------------------------------------------------
# Single reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_missing_notification(self, backend):
        assert await backend.get_notification("communication-404") is None

    @pytest.mark.asyncio
    async def test_get_one_off_notification(self, backend, new_notification, new_one_off):
        regular = await backend.persist_notification(new_notification())
        one_off = await backend.persist_one_off_notification(new_one_off())

        assert (await backend.get_one_off_notification(one_off.id)).id == one_off.id
        assert await backend.get_one_off_notification(regular.id) is None

    @pytest.mark.asyncio
    async def test_user_email(self, backend, store, new_notification):
        store.put({
            "resourceType": "Patient",
            "id": "123",
            "telecom": [
                {"system": "phone", "value": "+1-555-0100"},
                {"system": "email", "value": "ada@example.com"},
            ],
        })
        notification = await backend.persist_notification(new_notification(user_id="Patient/123"))

        assert await backend.get_user_email_from_notification(notification.id) == "ada@example.com"

    @pytest.mark.asyncio
    async def test_user_email_without_email_telecom(self, backend, store, new_notification):
        store.put({"resourceType": "Practitioner", "id": "7", "telecom": [{"system": "phone", "value": "1"}]})
        notification = await backend.persist_notification(new_notification(user_id="Practitioner/7"))

        assert await backend.get_user_email_from_notification(notification.id) is None

    @pytest.mark.asyncio
    async def test_user_email_for_missing_recipient(self, backend, new_notification, caplog):
        notification = await backend.persist_notification(new_notification(user_id="Patient/404"))

        with caplog.at_level(logging.WARNING, logger="fhirnotify.backend"):
            assert await backend.get_user_email_from_notification(notification.id) is None
        assert "Patient/404" in caplog.text


# ---------------------------------------------------------------------------
# Attachment operations
# ---------------------------------------------------------------------------


class TestAttachmentOperations:
    @pytest.fixture
    async def with_attachment(self, backend, new_notification):
        return await backend.persist_notification(
            new_notification(attachments=[NewAttachment(content=b"hello", filename="hello.txt")])
        )

    @pytest.mark.asyncio
    async def test_get_attachments_is_one_metadata_search(self, backend, store, with_attachment):
        store.calls.clear()

        attachments = await backend.get_attachments(with_attachment.id)

        assert [a.filename for a in attachments] == ["hello.txt"]
        assert len(store.calls_to("search", "Media")) == 1

    @pytest.mark.asyncio
    async def test_get_notification_hydrates_attachments(self, backend, with_attachment):
        notification = await backend.get_notification(with_attachment.id)

        assert [a.file_id for a in notification.attachments] == [with_attachment.attachments[0].file_id]

    @pytest.mark.asyncio
    async def test_file_lookups(self, backend, with_attachment):
        attachment = with_attachment.attachments[0]

        record = await backend.get_attachment_file_record(attachment.file_id)
        assert record.checksum == attachment.checksum
        assert (await backend.find_attachment_file_by_checksum(attachment.checksum)).id == attachment.file_id
        assert await backend.find_attachment_file_by_checksum("0" * 64) is None
        assert await backend.get_attachment_file_record("media-404") is None

    @pytest.mark.asyncio
    async def test_detach_then_delete_orphan(self, backend, store, with_attachment):
        file_id = with_attachment.attachments[0].file_id

        with pytest.raises(AttachmentInUseError):
            await backend.delete_attachment_file(file_id)

        await backend.delete_notification_attachment(with_attachment.id, file_id)

        assert await backend.get_attachments(with_attachment.id) == []
        assert [r.id for r in await backend.get_orphaned_attachment_files()] == [file_id]

        await backend.delete_attachment_file(file_id)
        assert store.resources["Media"] == {}
        assert store.resources["Binary"] == {}

    @pytest.mark.asyncio
    async def test_detach_unknown_file(self, backend, with_attachment):
        with pytest.raises(AttachmentNotFoundError):
            await backend.delete_notification_attachment(with_attachment.id, "media-404")

    @pytest.mark.asyncio
    async def test_delete_missing_file(self, backend):
        with pytest.raises(AttachmentNotFoundError):
            await backend.delete_attachment_file("media-404")
