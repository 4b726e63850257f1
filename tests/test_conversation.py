"""Tests for messages, history pagination, the live window and the local cache."""

from __future__ import annotations

import pytest

from clinicrelay.conversation.cache import ConversationCache
from clinicrelay.conversation.history import ConversationHistory
from clinicrelay.conversation.models import Message, MessageStatus, PageCursor, Sender
from clinicrelay.conversation.window import LiveWindowState, merge_messages
from clinicrelay.delivery.formatter import clinic_timezone, format_display_time, format_preview
from clinicrelay.errors import InvalidStatusTransition
from clinicrelay.queue.tasks import OutboundTask

from conftest import make_message


# ─── Message Model ───────────────────────────────────────────────

class TestMessage:
    def test_exactly_one_primary_payload(self):
        make_message("p1", 0).validate_payload()
        make_message("p1", 0, text="caption", image="https://x/1.jpg").validate_payload()
        with pytest.raises(ValueError):
            make_message("p1", 0, text=None).validate_payload()
        with pytest.raises(ValueError):
            make_message("p1", 0, text=None, image="a.jpg", voice="b.ogg").validate_payload()
        with pytest.raises(ValueError):
            make_message("p1", 0, text="hi", voice="b.ogg").validate_payload()

    def test_status_moves_forward_only(self):
        msg = make_message("p1", 0, sender=Sender.STAFF, status=MessageStatus.SENT)
        assert msg.advance_status(MessageStatus.SEEN)
        assert not msg.advance_status(MessageStatus.SEEN)
        with pytest.raises(InvalidStatusTransition):
            msg.advance_status(MessageStatus.DELIVERED)

    def test_patient_messages_have_no_status(self):
        with pytest.raises(InvalidStatusTransition):
            make_message("p1", 0).advance_status(MessageStatus.DELIVERED)

    def test_dict_roundtrip_uses_document_keys(self):
        msg = make_message("p1", 3, sender=Sender.STAFF, external_message_id=77, status="delivered")
        msg.id = "m3"
        data = msg.to_dict()
        assert data["externalMessageId"] == "77"
        assert data["createdAt"] == msg.created_at
        assert "image" not in data
        assert Message.from_dict(data) == msg

    def test_only_external_messages_sync(self):
        assert not make_message("p1", 0).can_sync_externally
        assert make_message("p1", 0, external_message_id="5").can_sync_externally


class TestTaskWire:
    def test_wire_shape(self):
        task = OutboundTask(
            target_channel_identity=12345,
            action="SEND",
            originating_message_id="m1",
            text="Hello",
        )
        wire = task.to_wire()
        assert wire["targetChannelIdentity"] == "12345"
        assert wire["action"] == "SEND"
        assert wire["status"] == "PENDING"
        assert wire["originatingMessageId"] == "m1"
        assert "imageUrl" not in wire
        assert OutboundTask.from_wire(wire).id == task.id

    def test_edit_requires_external_id(self):
        task = OutboundTask(target_channel_identity="1", action="EDIT", originating_message_id="m", text="x")
        with pytest.raises(ValueError):
            task.validate()

    def test_missing_identity_fails_validation(self):
        task = OutboundTask(target_channel_identity=None, action="SEND", originating_message_id="m", text="x")
        with pytest.raises(ValueError):
            task.validate()


class TestFormatter:
    def test_previews(self):
        assert format_preview(make_message("p1", 0, text=" Hello ")) == "Hello"
        assert format_preview(make_message("p1", 0, text=None, image="u")) == "🖼 Photo"
        assert format_preview(make_message("p1", 0, text=None, voice="u")) == "🎤 Voice"
        assert format_preview(None) == ""

    def test_display_time(self):
        assert format_display_time("2026-03-01T14:05:09.000000+00:00") == "14:05"

    def test_display_time_in_clinic_timezone(self):
        tashkent = clinic_timezone("Asia/Tashkent")
        assert format_display_time("2026-03-01T14:05:09.000000+00:00", tashkent) == "19:05"
        assert format_display_time("2026-03-01T22:30:00.000000+00:00", tashkent) == "03:30"
        assert format_display_time("2026-03-01T14:05:09.000000+00:00", clinic_timezone("")) == "14:05"


# ─── History & Pagination ────────────────────────────────────────

class TestHistory:
    @pytest.fixture
    def history(self, store):
        return ConversationHistory(store)

    @pytest.mark.asyncio
    async def test_fetch_latest_ascending(self, history, patient):
        for i in range(5):
            await history.append(make_message("p1", i))
        latest = await history.fetch_latest("p1", 3)
        assert [m.text for m in latest] == ["message 2", "message 3", "message 4"]
        assert (await history.latest("p1")).text == "message 4"

    @pytest.mark.asyncio
    async def test_pagination_round_trip(self, history, patient):
        # Pairs of messages share a timestamp to exercise the id tie-break.
        for i in range(70):
            await history.append(make_message("p1", i // 2, text=f"m{i}"))

        page = await history.fetch_latest("p1", 30)
        collected = list(page)
        while page:
            page = await history.fetch_older_than(PageCursor.from_message(collected[0]), 30)
            collected = page + collected

        assert len(collected) == 70
        assert len({m.id for m in collected}) == 70
        keys = [m.sort_key for m in collected]
        assert keys == sorted(keys)

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, history, patient):
        msg = await history.append(make_message("p1", 1))
        assert await history.delete("p1", msg.id)
        assert not await history.delete("p1", msg.id)
        assert await history.fetch_latest("p1", 10) == []

    @pytest.mark.asyncio
    async def test_append_rejects_empty(self, history, patient):
        with pytest.raises(ValueError):
            await history.append(make_message("p1", 1, text=None))

    @pytest.mark.asyncio
    async def test_advance_status(self, history, patient):
        msg = await history.append(make_message("p1", 1, sender=Sender.STAFF, status="sent"))
        assert await history.advance_status("p1", msg.id, MessageStatus.DELIVERED)
        assert not await history.advance_status("p1", msg.id, MessageStatus.DELIVERED)
        assert (await history.get("p1", msg.id)).status == MessageStatus.DELIVERED
        assert not await history.advance_status("p1", "missing", MessageStatus.SEEN)

    @pytest.mark.asyncio
    async def test_non_positive_page_size(self, history, patient):
        await history.append(make_message("p1", 1))
        assert await history.fetch_latest("p1", 0) == []


# ─── Live Window ─────────────────────────────────────────────────

def _msg(i: int, text: str | None = None) -> Message:
    msg = make_message("p1", i, text=text or f"message {i}")
    msg.id = f"m{i:03d}"
    return msg


class TestLiveWindow:
    def test_merge_dedupes_later_wins(self):
        merged = merge_messages([_msg(1), _msg(2)], [_msg(2, "edited"), _msg(3)])
        assert [m.id for m in merged] == ["m001", "m002", "m003"]
        assert merged[1].text == "edited"

    def test_snapshot_prunes_deleted_history_in_range(self):
        state = LiveWindowState()
        state.add_history([_msg(1), _msg(2), _msg(5)])
        state.apply_snapshot([_msg(3), _msg(4), _msg(6)], window_size=3)
        # m005 vanished from the window's range: deleted elsewhere.
        assert [m.id for m in state.messages] == ["m001", "m002", "m003", "m004", "m006"]

    def test_history_page_does_not_duplicate_live(self):
        state = LiveWindowState()
        state.apply_snapshot([_msg(3), _msg(4)], window_size=2)
        state.add_history([_msg(2), _msg(3)])
        assert [m.id for m in state.messages] == ["m002", "m003", "m004"]
        assert state.oldest.id == "m002"

    def test_local_write_survives_older_snapshot(self):
        state = LiveWindowState()
        state.apply_snapshot([_msg(1), _msg(2)], window_size=2)
        state.upsert_local(_msg(9))
        state.apply_snapshot([_msg(1), _msg(2)], window_size=2)
        assert state.messages[-1].id == "m009"

    def test_remove_local(self):
        state = LiveWindowState()
        state.apply_snapshot([_msg(1), _msg(2)], window_size=2)
        state.remove_local("m002")
        assert [m.id for m in state.messages] == ["m001"]


# ─── Local Cache ─────────────────────────────────────────────────

class TestConversationCache:
    def test_save_and_load(self, tmp_path):
        cache = ConversationCache(tmp_path / "cache")
        cache.save("p1", [_msg(1), _msg(2)])
        loaded = cache.load("p1")
        assert [m.id for m in loaded] == ["m001", "m002"]

    def test_missing_and_corrupt(self, tmp_path):
        cache = ConversationCache(tmp_path)
        assert cache.load("p1") == []
        (tmp_path / "p1.json").write_text("{not json")
        assert cache.load("p1") == []

    def test_clear(self, tmp_path):
        cache = ConversationCache(tmp_path)
        cache.save("p1", [_msg(1)])
        cache.clear("p1")
        assert cache.load("p1") == []
