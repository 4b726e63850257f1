"""Tests for the relay worker: ingestion, safety gate, media and delivery."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from clinicrelay.config import DeliveryConfig, SafetyConfig
from clinicrelay.conversation.models import MessageStatus, Sender
from clinicrelay.errors import (
    MediaPublishError,
    RetryableChannelError,
    TerminalChannelError,
)
from clinicrelay.gateway.message import InboundEvent, Media
from clinicrelay.patients.directory import coerce_identity, phone_variants
from clinicrelay.queue.outbound import OutboundQueue, delete_task, edit_task, send_task
from clinicrelay.queue.tasks import TaskStatus
from clinicrelay.relay.delivery import DeliveryResult, TaskDeliverer
from clinicrelay.relay.inbound import InboundIngestor, IngestStatus
from clinicrelay.relay.media import LocalMediaStorage, MediaPublisher
from clinicrelay.relay.safety import ContentSafetyGate
from clinicrelay.relay.worker import RelayWorker

from conftest import FakeChannel, make_message


def _event(text: str = "Salom", identity="555", **kwargs) -> InboundEvent:
    return InboundEvent(sender_identity=identity, text=text, **kwargs)


# ─── Safety Gate ─────────────────────────────────────────────────

class TestSafetyGate:
    def test_scam_text(self):
        gate = ContentSafetyGate()
        assert gate.is_unsafe_text("Get FREE SPINS now, click here")
        assert gate.is_unsafe_text("join http://t.me/bonus")
        assert not gate.is_unsafe_text("Doctor, my tooth hurts since Monday")
        assert not gate.is_unsafe_text("")

    def test_dangerous_attachments(self):
        gate = ContentSafetyGate()
        assert gate.is_dangerous_attachment("invoice.exe")
        assert gate.is_dangerous_attachment("Setup.MSI")
        assert not gate.is_dangerous_attachment("xray.jpg")
        assert not gate.is_dangerous_attachment("")
        assert gate.is_unsafe("see attached", ["invoice.exe"])

    def test_config_overrides(self):
        gate = ContentSafetyGate(SafetyConfig(scam_pattern=r"lottery", dangerous_extensions=[".zip"]))
        assert gate.is_unsafe_text("You won the LOTTERY")
        assert not gate.is_unsafe_text("bitcoin")
        assert gate.is_dangerous_attachment("archive.zip")
        assert not gate.is_dangerous_attachment("invoice.exe")

    def test_forwarded_posts(self):
        assert ContentSafetyGate().is_unsafe("Hello", forwarded=True)
        assert not ContentSafetyGate().is_unsafe("Hello")
        allow = ContentSafetyGate(SafetyConfig(block_forwarded_posts=False))
        assert not allow.is_unsafe("Hello", forwarded=True)


# ─── Identity Resolution ─────────────────────────────────────────

class TestIdentity:
    def test_coerce_identity(self):
        assert coerce_identity("123") == 123
        assert coerce_identity(123) == "123"
        assert coerce_identity("-100200") == -100200
        assert coerce_identity("console:local") is None

    def test_phone_variants(self):
        assert phone_variants("998901234567") == ["+998901234567", "+998 90 123 45 67"]
        assert phone_variants("+1 555 0100") == ["+15550100"]
        assert phone_variants("") == []


# ─── Inbound Ingestion ───────────────────────────────────────────

class TestIngestion:
    @pytest.fixture
    def ingestor(self, store, channel, media_storage):
        return InboundIngestor(store, channel, MediaPublisher(media_storage), typing_quiet_period=0.2)

    @pytest.mark.asyncio
    async def test_unread_equals_ingested_events(self, store, patient, ingestor):
        for i in range(7):
            result = await ingestor.ingest(_event(f"message {i}", external_message_id=str(i)))
            assert result.status == IngestStatus.STORED

        p = await store.get_patient("p1")
        assert p.unread_count == 7
        assert p.last_message == "message 6"
        assert await store.count_messages("p1") == 7

    @pytest.mark.asyncio
    async def test_unknown_sender_dropped(self, store, patient, ingestor):
        result = await ingestor.ingest(_event(identity="999"))
        assert result.status == IngestStatus.DROPPED
        assert await store.count_messages("p1") == 0

    @pytest.mark.asyncio
    async def test_coerced_identity_resolves(self, store, ingestor):
        await store.upsert_patient("p2", channel_identity=555)
        result = await ingestor.ingest(_event(identity="555"))
        assert result.status == IngestStatus.STORED
        assert result.patient_id == "p2"

    @pytest.mark.asyncio
    async def test_dangerous_attachment_rejected(self, store, patient, ingestor):
        event = _event(
            "Please pay this invoice",
            media=[Media(type="document", file_ref="f1", filename="invoice.exe")],
        )
        result = await ingestor.ingest(event)
        assert result.status == IngestStatus.REJECTED
        assert await store.count_messages("p1") == 0
        assert (await store.get_patient("p1")).unread_count == 0

    @pytest.mark.asyncio
    async def test_scam_text_rejected(self, store, patient, ingestor):
        result = await ingestor.ingest(_event("Crypto giveaway! Send USDT"))
        assert result.status == IngestStatus.REJECTED
        assert (await store.get_patient("p1")).unread_count == 0

    @pytest.mark.asyncio
    async def test_photo_published_before_persist(self, store, patient, channel, ingestor):
        channel.files["photo-1"] = b"\xff\xd8jpeg"
        event = _event(
            "",
            caption="Swelling since yesterday",
            media=[Media(type="image", file_ref="photo-1", mime_type="image/jpeg", filename="a.jpg")],
        )
        result = await ingestor.ingest(event)
        assert result.status == IngestStatus.STORED
        msg = result.message
        assert msg.image.startswith("https://media.clinic.test/p1/")
        assert msg.text == "Swelling since yesterday"
        assert (await store.get_patient("p1")).last_message == "Swelling since yesterday"

    @pytest.mark.asyncio
    async def test_voice_preview(self, store, patient, channel, ingestor):
        channel.files["v1"] = b"OggS"
        event = _event("", media=[Media(type="voice", file_ref="v1", mime_type="audio/ogg", filename="v.ogg")])
        result = await ingestor.ingest(event)
        assert result.message.voice
        assert result.message.text is None
        assert (await store.get_patient("p1")).last_message == "🎤 Voice"

    @pytest.mark.asyncio
    async def test_media_failure_persists_nothing(self, store, patient, ingestor):
        event = _event("", media=[Media(type="image", file_ref="expired", filename="a.jpg")])
        result = await ingestor.ingest(event)
        assert result.status == IngestStatus.FAILED
        assert await store.count_messages("p1") == 0
        assert (await store.get_patient("p1")).unread_count == 0

    @pytest.mark.asyncio
    async def test_safe_document_ignored(self, store, patient, ingestor):
        event = _event("", media=[Media(type="document", file_ref="d1", filename="report.pdf")])
        result = await ingestor.ingest(event)
        assert result.status == IngestStatus.IGNORED
        assert await store.count_messages("p1") == 0

    @pytest.mark.asyncio
    async def test_typing_lease_and_message_clears_it(self, store, patient, ingestor):
        await ingestor.ingest(InboundEvent(kind="typing", sender_identity="555"))
        assert (await store.get_patient("p1")).user_is_typing

        await ingestor.ingest(_event("Hello"))
        assert not (await store.get_patient("p1")).user_is_typing

    @pytest.mark.asyncio
    async def test_typing_lease_expires(self, store, patient, ingestor):
        await ingestor.ingest(InboundEvent(kind="typing", sender_identity="555"))
        await asyncio.sleep(0.35)
        assert not (await store.get_patient("p1")).user_is_typing

    @pytest.mark.asyncio
    async def test_read_receipt_marks_seen(self, store, patient, ingestor):
        msg = await store.insert_message(make_message(
            "p1", 1, sender=Sender.STAFF, status="delivered", external_message_id="300"
        ))
        result = await ingestor.ingest(InboundEvent(
            kind="read", sender_identity="555", external_message_id="300"
        ))
        assert result.status == IngestStatus.UPDATED
        assert (await store.get_message("p1", msg.id)).status == MessageStatus.SEEN

    @pytest.mark.asyncio
    async def test_contact_links_identity(self, store, patient, ingestor):
        await store.upsert_patient("p3", full_name="Dilshod", phone="+998 93 555 11 22")
        result = await ingestor.ingest(InboundEvent(
            kind="contact", sender_identity="8080", contact_phone="998935551122"
        ))
        assert result.status == IngestStatus.LINKED
        assert (await store.get_patient("p3")).channel_identity == "8080"

        missing = await ingestor.ingest(InboundEvent(
            kind="contact", sender_identity="9090", contact_phone="+10000000000"
        ))
        assert missing.status == IngestStatus.DROPPED

    @pytest.mark.asyncio
    async def test_contact_link_is_confirmed(self, store, patient, channel, media_storage):
        ingestor = InboundIngestor(
            store, channel, MediaPublisher(media_storage),
            link_replies=("Welcome, {name}!", "Number not found."),
        )
        await store.upsert_patient("p3", full_name="Dilshod", phone="+998 93 555 11 22")
        await ingestor.ingest(InboundEvent(
            kind="contact", sender_identity="8080", contact_phone="998935551122"
        ))
        await ingestor.ingest(InboundEvent(
            kind="contact", sender_identity="9090", contact_phone="+10000000000"
        ))

        assert [(s["identity"], s["text"]) for s in channel.sent] == [
            ("8080", "Welcome, Dilshod!"),
            ("9090", "Number not found."),
        ]

    @pytest.mark.asyncio
    async def test_failed_confirmation_keeps_link(self, store, patient, channel, media_storage):
        ingestor = InboundIngestor(
            store, channel, MediaPublisher(media_storage), link_replies=("Hi {name}", "No")
        )
        channel.failures.append(TerminalChannelError("403 Forbidden"))
        await store.upsert_patient("p3", full_name="Dilshod", phone="+998 93 555 11 22")
        result = await ingestor.ingest(InboundEvent(
            kind="contact", sender_identity="8080", contact_phone="998935551122"
        ))
        assert result.status == IngestStatus.LINKED
        assert (await store.get_patient("p3")).channel_identity == "8080"

    @pytest.mark.asyncio
    async def test_forwarded_post_rejected(self, store, patient, ingestor):
        result = await ingestor.ingest(_event("Great offer from our channel", forwarded=True))
        assert result.status == IngestStatus.REJECTED
        assert await store.count_messages("p1") == 0
        assert (await store.get_patient("p1")).unread_count == 0

    @pytest.mark.asyncio
    async def test_display_time_in_clinic_timezone(self, store, patient, channel, media_storage):
        ingestor = InboundIngestor(
            store, channel, MediaPublisher(media_storage), timezone="Asia/Tashkent"
        )
        result = await ingestor.ingest(_event("Salom"))
        created = datetime.fromisoformat(result.message.created_at)
        assert result.message.time == (created + timedelta(hours=5)).strftime("%H:%M")


class TestMediaPublisher:
    @pytest.mark.asyncio
    async def test_local_storage_without_public_url(self, tmp_path):
        storage = LocalMediaStorage(tmp_path)
        url = await storage.publish("p1", "../../etc/passwd", b"x", "text/plain")
        assert url.startswith("file://")
        assert (tmp_path / "p1").is_dir()
        assert len(list((tmp_path / "p1").iterdir())) == 1

    @pytest.mark.asyncio
    async def test_empty_download_fails(self, media_storage):
        channel = FakeChannel(files={"f": b""})
        publisher = MediaPublisher(media_storage)
        with pytest.raises(MediaPublishError):
            await publisher.publish_attachment(channel, "p1", Media(type="image", file_ref="f"))


# ─── Outbound Delivery ───────────────────────────────────────────

async def _staff_message(store, i: int = 1, **kwargs):
    kwargs.setdefault("status", MessageStatus.SENT)
    return await store.insert_message(make_message("p1", i, sender=Sender.STAFF, **kwargs))


class TestDelivery:
    @pytest.fixture
    def deliverer(self, store, channel):
        config = DeliveryConfig(max_attempts=3, backoff_base=0.0, attempt_timeout=1.0)
        return TaskDeliverer(store, channel, config)

    @pytest.fixture
    def queue(self, store):
        return OutboundQueue(store)

    @pytest.mark.asyncio
    async def test_send_links_external_id(self, store, patient, channel, deliverer, queue):
        msg = await _staff_message(store, text="Take one pill daily")
        task_id = await queue.enqueue(send_task(patient, msg))

        outcome = await deliverer.deliver(task_id)
        assert outcome.result == DeliveryResult.DELIVERED
        assert channel.sent[0]["text"] == "Take one pill daily"
        assert channel.sent[0]["identity"] == "555"

        stored = await store.get_message("p1", msg.id)
        assert stored.external_message_id == outcome.external_message_id
        assert stored.status == MessageStatus.DELIVERED
        assert (await store.get_task(task_id)).status == TaskStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped(self, store, patient, channel, deliverer, queue):
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))
        await deliverer.deliver(task_id)
        again = await deliverer.deliver(task_id)
        assert again.result == DeliveryResult.SKIPPED
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_already_sent_message_not_resent(self, store, patient, channel, deliverer, queue):
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))
        await store.set_external_message_id("p1", msg.id, "41")

        outcome = await deliverer.deliver(task_id)
        assert outcome.result == DeliveryResult.DELIVERED
        assert outcome.external_message_id == "41"
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_image_with_caption_and_reply(self, store, patient, channel, deliverer, queue):
        img = await _staff_message(store, 1, text="Your x-ray", image="https://media/x.jpg")
        await queue.enqueue(send_task(patient, img))
        reply = await _staff_message(store, 2, text="See above")
        await queue.enqueue(send_task(patient, reply, reply_to_external_id="12"))

        for task_id in await queue.due():
            await deliverer.deliver(task_id)
        assert channel.sent[0]["kind"] == "image"
        assert channel.sent[0]["caption"] == "Your x-ray"
        assert channel.sent[1]["reply_to"] == "12"

    @pytest.mark.asyncio
    async def test_retryable_then_success(self, store, patient, channel, deliverer, queue):
        channel.failures.append(RetryableChannelError("429 Too Many Requests", status_code=429))
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))

        first = await deliverer.deliver(task_id)
        assert first.result == DeliveryResult.RETRY
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 1
        assert task.last_error

        second = await deliverer.deliver(task_id)
        assert second.result == DeliveryResult.DELIVERED
        assert second.attempts == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, store, patient, channel, deliverer, queue):
        channel.failures.extend(RetryableChannelError("502 Bad Gateway") for _ in range(3))
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))

        results = [(await deliverer.deliver(task_id)).result for _ in range(3)]
        assert results == [DeliveryResult.RETRY, DeliveryResult.RETRY, DeliveryResult.FAILED]
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_against_budget(self, store, patient, channel, deliverer, queue):
        channel.failures.extend(KeyError("message_id") for _ in range(5))
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))

        results = [(await deliverer.deliver(task_id)).result for _ in range(5)]
        assert results == [
            DeliveryResult.RETRY,
            DeliveryResult.RETRY,
            DeliveryResult.FAILED,
            DeliveryResult.SKIPPED,
            DeliveryResult.SKIPPED,
        ]
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.attempts == 3
        assert "KeyError" in task.last_error

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_batch(self, store, patient, channel, deliverer, queue):
        channel.failures.append(TypeError("'NoneType' object is not subscriptable"))
        for i in range(2):
            msg = await _staff_message(store, i)
            await queue.enqueue(send_task(patient, msg))

        outcomes = [await deliverer.deliver(task_id) for task_id in await queue.due()]
        assert sorted(o.result.value for o in outcomes) == ["delivered", "retry"]
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_terminal_error_fails_immediately(self, store, patient, channel, deliverer, queue):
        channel.failures.append(TerminalChannelError("403 Forbidden: bot was blocked by the user"))
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))

        outcome = await deliverer.deliver(task_id)
        assert outcome.result == DeliveryResult.FAILED
        assert "blocked" in (await store.get_task(task_id)).last_error
        assert (await store.get_message("p1", msg.id)).status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_deleted_origin_is_not_sent(self, store, patient, channel, deliverer, queue):
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))
        await store.delete_message("p1", msg.id)

        outcome = await deliverer.deliver(task_id)
        assert outcome.result == DeliveryResult.FAILED
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_edit_and_delete(self, store, patient, channel, deliverer, queue):
        channel.live.add("77")
        msg = await _staff_message(store, external_message_id="77")

        edit_id = await queue.enqueue(edit_task(patient, msg, "Updated dosage"))
        assert (await deliverer.deliver(edit_id)).result == DeliveryResult.DELIVERED
        assert channel.edits == [("555", "77", "Updated dosage")]

        delete_id = await queue.enqueue(delete_task(patient, msg))
        assert (await deliverer.deliver(delete_id)).result == DeliveryResult.DELIVERED
        assert channel.deletes == [("555", "77")]

    @pytest.mark.asyncio
    async def test_missing_target_delete_tolerated_edit_fails(self, store, patient, deliverer, queue):
        msg = await _staff_message(store, external_message_id="404")

        delete_id = await queue.enqueue(delete_task(patient, msg))
        assert (await deliverer.deliver(delete_id)).result == DeliveryResult.DELIVERED

        edit_id = await queue.enqueue(edit_task(patient, msg, "too late"))
        assert (await deliverer.deliver(edit_id)).result == DeliveryResult.FAILED

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_retryable(self, store, patient, channel, queue):
        class SlowChannel(FakeChannel):
            async def send_text(self, identity, text, reply_to=None):
                await asyncio.sleep(5)
                return "never"

        config = DeliveryConfig(max_attempts=2, backoff_base=0.0, attempt_timeout=0.05)
        deliverer = TaskDeliverer(store, SlowChannel(), config)
        msg = await _staff_message(store)
        task_id = await queue.enqueue(send_task(patient, msg))

        outcome = await deliverer.deliver(task_id)
        assert outcome.result == DeliveryResult.RETRY
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_task_without_identity_fails(self, store, patient, channel, deliverer):
        msg = await _staff_message(store)
        task = send_task(patient, msg)
        task.target_channel_identity = ""
        await store.insert_task(task)

        outcome = await deliverer.deliver(task.id)
        assert outcome.result == DeliveryResult.FAILED
        assert channel.sent == []

    def test_backoff_is_capped(self):
        deliverer = TaskDeliverer(None, FakeChannel(), DeliveryConfig(backoff_base=1.0, backoff_max=60.0))
        assert [deliverer.backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
        assert deliverer.backoff(10) == 60.0

    @pytest.mark.asyncio
    async def test_scheduled_send_waits_and_updates_preview(self, store, patient, channel, deliverer, queue):
        due = await _staff_message(
            store, 1, text="Reminder: appointment tomorrow",
            scheduled_for="2000-01-01T00:00:00.000000+00:00",
        )
        later = await _staff_message(
            store, 2, text="Follow-up call", scheduled_for="2999-01-01T00:00:00.000000+00:00"
        )
        task_id = await queue.enqueue(send_task(patient, due))
        later_id = await queue.enqueue(send_task(patient, later))
        assert await queue.due() == [task_id]
        assert (await deliverer.deliver(later_id)).result == DeliveryResult.SKIPPED

        outcome = await deliverer.deliver(task_id)
        assert outcome.result == DeliveryResult.DELIVERED
        assert (await store.get_patient("p1")).last_message == "Reminder: appointment tomorrow"


# ─── Worker ──────────────────────────────────────────────────────

class TestRelayWorker:
    @pytest.mark.asyncio
    async def test_run_ingests_in_order_then_stops(self, store, patient, config, media_storage):
        channel = FakeChannel(events=[_event(f"m{i}") for i in range(3)])
        worker = RelayWorker(config, store=store, channel=channel, media_storage=media_storage)
        await worker.startup()
        await asyncio.wait_for(worker.run(), timeout=5)
        await worker.shutdown()

        p = await store.get_patient("p1")
        assert p.unread_count == 3
        latest = await store.latest_messages("p1", 10)
        assert [m.text for m in latest] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_run_outbound_once(self, store, patient, config, channel, media_storage):
        worker = RelayWorker(config, store=store, channel=channel, media_storage=media_storage)
        queue = OutboundQueue(store)
        for i in range(3):
            msg = await _staff_message(store, i)
            await queue.enqueue(send_task(patient, msg))

        outcomes = await worker.run_outbound_once()
        assert [o.result for o in outcomes] == [DeliveryResult.DELIVERED] * 3
        assert await worker.run_outbound_once() == []
        assert (await store.count_tasks_by_status())["DELIVERED"] == 3
