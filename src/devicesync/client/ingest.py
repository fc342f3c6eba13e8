"""Event ingestion pipeline.

This module provides:
- EventIngestionPipeline: Applies inbound remote events at most once

Architecture:
    Backend ─event─► ConnectionManager ─► EventIngestionPipeline
                                              │
                            ledger_has? ──yes─┼─► ack (fail: no ack)
                                 │ no         │
                            handler(store) ───┼─► (fail: no ledger, no ack)
                                 │            │
                            ledger_write ─────┼─► (fail: no ack, redelivered)
                                 │            │
                               ack ──► data_changed

The backend delivers at least once. The ledger collapses redeliveries to
a single domain effect. Events are processed strictly one at a time per
connection so the check -> mutate -> record -> ack sequence of one event
never interleaves with another.

Ledger-write failure policy:
    When the handler succeeded but the ledger row could not be written,
    the event is NOT acknowledged. The backend redelivers it; the default
    handlers upsert by natural id, so the replay rewrites the same row
    and the ledger write is retried. An acknowledged-but-unrecorded event
    could never be retried, which is the worse failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from devicesync.client.signals import EngineSignals, ErrorCategory
from devicesync.client.transport import ConnectionLost
from devicesync.client.types import (
    AppliedEventRecord,
    EventType,
    IngestOutcome,
    RemoteEvent,
)

if TYPE_CHECKING:
    from devicesync.client.handlers import EventHandler
    from devicesync.client.store import LocalStore
    from devicesync.client.transport import DuplexTransport

logger = logging.getLogger(__name__)


class EventIngestionPipeline:
    """Deduplicates, applies and acknowledges inbound events.

    One pipeline is bound to one connection instance.

    Usage:
        pipeline = EventIngestionPipeline(store, transport, handlers, signals)
        outcome = await pipeline.handle(event)
    """

    def __init__(
        self,
        store: LocalStore,
        transport: DuplexTransport,
        handlers: Mapping[EventType, EventHandler],
        signals: EngineSignals,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Local store holding the ledger and the entities.
            transport: Connection used to acknowledge events.
            handlers: Dispatch table resolved at engine startup.
            signals: Engine signals (data_changed, error sink).
        """
        self._store = store
        self._transport = transport
        self._handlers = handlers
        self._signals = signals
        self._lock = asyncio.Lock()

    async def handle(self, event: RemoteEvent) -> IngestOutcome:
        """Process one event; concurrent calls are serialized."""
        async with self._lock:
            outcome = await self._process(event)
        logger.debug("Event %s (%s): %s", event.event_id, event.event_type, outcome.value)
        return outcome

    async def _process(self, event: RemoteEvent) -> IngestOutcome:
        loop = asyncio.get_running_loop()
        sink = self._signals.sink

        try:
            seen = await loop.run_in_executor(None, self._store.ledger_has, event.event_id)
        except Exception as e:
            # Not acknowledged, so the backend redelivers it.
            sink.report(ErrorCategory.LEDGER, e, event.event_id)
            return IngestOutcome.FAILED

        if seen:
            logger.info("Duplicate event %s, acknowledging", event.event_id)
            await self._acknowledge(event)
            return IngestOutcome.DUPLICATE

        event_type = EventType.parse(event.event_type)
        handler = self._handlers.get(event_type) if event_type else None
        if handler is None:
            logger.warning(
                "No handler for event type %r (event %s), dropping",
                event.event_type,
                event.event_id,
            )
            return IngestOutcome.UNKNOWN_TYPE

        try:
            await loop.run_in_executor(None, handler, self._store, event)
        except Exception as e:
            sink.report(ErrorCategory.HANDLER, e, f"{event.event_type} {event.event_id}")
            return IngestOutcome.FAILED

        try:
            await loop.run_in_executor(
                None, self._store.ledger_write, AppliedEventRecord.for_event(event)
            )
        except Exception as e:
            # Local state did change; the UI still needs a refresh.
            sink.report(ErrorCategory.LEDGER, e, event.event_id)
            self._signals.data_changed.emit()
            return IngestOutcome.UNRECORDED

        await self._acknowledge(event)
        logger.info("Applied event %s (%s)", event.event_id, event.event_type)
        self._signals.data_changed.emit()
        return IngestOutcome.APPLIED

    async def _acknowledge(self, event: RemoteEvent) -> None:
        try:
            await self._transport.acknowledge(event.event_id)
        except ConnectionLost as e:
            # The ledger already holds the record; the redelivery is a duplicate.
            logger.warning("Could not acknowledge %s: %s", event.event_id, e)
