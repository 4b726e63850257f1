"""Shared fixtures: a temporary store, a scriptable channel, local media storage."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from clinicrelay.config import RelayConfig
from clinicrelay.conversation.models import Message, Sender, to_iso
from clinicrelay.errors import TargetNotFoundError, TerminalChannelError
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.relay.media import LocalMediaStorage
from clinicrelay.store.documents import DocumentStore

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeChannel(BaseChannel):
    """In-memory channel that records outbound calls.

    Exceptions queued in `failures` are raised, in order, by the next
    outbound operations.
    """

    def __init__(self, events=None, files=None) -> None:
        self.events = list(events or [])
        self.files = dict(files or {})
        self.failures: list[Exception] = []
        self.sent: list[dict] = []
        self.edits: list[tuple[str, str, str]] = []
        self.deletes: list[tuple[str, str]] = []
        self.live: set[str] = set()
        self._ids = itertools.count(100)

    @property
    def name(self) -> str:
        return "fake"

    async def receive(self):
        for event in self.events:
            yield event

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def _record(self, **payload) -> str:
        external_id = str(next(self._ids))
        payload["external_id"] = external_id
        self.sent.append(payload)
        self.live.add(external_id)
        return external_id

    async def send_text(self, identity, text, reply_to=None):
        self._maybe_fail()
        return self._record(kind="text", identity=identity, text=text, reply_to=reply_to)

    async def send_image(self, identity, url, caption=None):
        self._maybe_fail()
        return self._record(kind="image", identity=identity, url=url, caption=caption)

    async def send_voice(self, identity, url):
        self._maybe_fail()
        return self._record(kind="voice", identity=identity, url=url)

    async def edit_text(self, identity, external_message_id, text):
        self._maybe_fail()
        if external_message_id not in self.live:
            raise TargetNotFoundError("Bad Request: message to edit not found", status_code=400)
        self.edits.append((identity, external_message_id, text))

    async def delete_message(self, identity, external_message_id):
        self._maybe_fail()
        if external_message_id not in self.live:
            raise TargetNotFoundError("Bad Request: message to delete not found", status_code=400)
        self.live.discard(external_message_id)
        self.deletes.append((identity, external_message_id))

    async def fetch_file(self, file_ref):
        if file_ref not in self.files:
            raise TerminalChannelError(f"file {file_ref} expired", status_code=400)
        return self.files[file_ref]


def make_message(patient_id: str, i: int, sender: Sender = Sender.PATIENT, **kwargs) -> Message:
    """A message `i` seconds after BASE_TIME."""
    kwargs.setdefault("text", f"message {i}")
    return Message(
        patient_id=patient_id,
        sender=sender,
        created_at=to_iso(BASE_TIME + timedelta(seconds=i)),
        time="09:00",
        **kwargs,
    )


@pytest.fixture
def config(tmp_path) -> RelayConfig:
    return RelayConfig(config_dir=tmp_path)


@pytest_asyncio.fixture
async def store(tmp_path):
    store = DocumentStore(tmp_path / "relay.db", busy_timeout=10)
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def patient(store):
    await store.upsert_patient(
        "p1", full_name="Aziza Karimova", phone="+998 90 123 45 67", channel_identity="555"
    )
    return await store.get_patient("p1")


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def media_storage(tmp_path) -> LocalMediaStorage:
    return LocalMediaStorage(tmp_path / "media", "https://media.clinic.test")
