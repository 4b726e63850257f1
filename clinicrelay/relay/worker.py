"""Channel relay worker — the process that talks to the external channel.

Two loops share one store connection: the inbound loop ingests channel
events one at a time in arrival order, and the outbound loop drains due
tasks from the queue sequentially.
"""

from __future__ import annotations

import asyncio
import logging

from clinicrelay.config import RelayConfig
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.gateway.router import Gateway
from clinicrelay.queue.outbound import OutboundQueue
from clinicrelay.relay.delivery import DeliveryOutcome, TaskDeliverer
from clinicrelay.relay.inbound import InboundIngestor
from clinicrelay.relay.media import LocalMediaStorage, MediaPublisher, MediaStorage
from clinicrelay.relay.safety import ContentSafetyGate
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


class RelayWorker:
    """Owns the channel and moves data between it and the shared store."""

    def __init__(
        self,
        config: RelayConfig,
        store: DocumentStore | None = None,
        channel: BaseChannel | None = None,
        media_storage: MediaStorage | None = None,
    ) -> None:
        self.config = config
        self._owns_store = store is None
        self.store = store or DocumentStore(config.database_path, config.store.busy_timeout)
        self.channel = channel or Gateway(config).primary

        storage = media_storage or LocalMediaStorage(
            config.media_path, config.media.public_base_url
        )
        self.ingestor = InboundIngestor(
            self.store,
            self.channel,
            MediaPublisher(storage),
            ContentSafetyGate(config.safety),
            typing_quiet_period=config.conversation.typing_quiet_period,
            timezone=config.conversation.timezone,
            link_replies=(config.channel.link_success_text, config.channel.link_not_found_text),
        )
        self.deliverer = TaskDeliverer(self.store, self.channel, config.delivery)
        self.queue = OutboundQueue(self.store)
        self._loops: list[asyncio.Task] = []

    async def startup(self) -> None:
        """Initialize the store and the channel."""
        if self._owns_store:
            await self.store.connect()
        await self.channel.start()
        logger.info(f"Relay worker started on channel '{self.channel.name}'")

    async def shutdown(self) -> None:
        """Stop loops and release the channel and the store."""
        await self.stop()
        await self.channel.stop()
        if self._owns_store:
            await self.store.close()

    # ─── Loops ───────────────────────────────────────────────────

    async def run(self) -> None:
        """Run both loops until one ends or `stop()` is called."""
        self._loops = [
            asyncio.create_task(self._inbound_loop(), name="relay-inbound"),
            asyncio.create_task(self._outbound_loop(), name="relay-outbound"),
        ]
        try:
            done, _ = await asyncio.wait(self._loops, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            await self.stop()

    async def _inbound_loop(self) -> None:
        async for event in self.channel.receive():
            try:
                result = await self.ingestor.ingest(event)
            except Exception:
                logger.exception(f"Ingestion of event {event.id} failed")
                continue
            logger.debug(f"Inbound {event.kind} from {event.sender_identity!r}: {result.status.value}")
        logger.info("Channel receive loop ended")

    async def _outbound_loop(self) -> None:
        batch = self.config.delivery.batch_size
        while True:
            try:
                outcomes = await self.run_outbound_once()
            except Exception:
                logger.exception("Outbound pass failed")
                outcomes = []
            if len(outcomes) < batch:
                await asyncio.sleep(self.config.delivery.poll_interval)

    async def run_outbound_once(self) -> list[DeliveryOutcome]:
        """Deliver every task that is currently due, oldest first."""
        task_ids = await self.queue.due(self.config.delivery.batch_size)
        outcomes = []
        for task_id in task_ids:
            outcomes.append(await self.deliverer.deliver(task_id))
        return outcomes

    async def stop(self) -> None:
        """Cancel both loops and lower any patient typing flags."""
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        await self.ingestor.close()
