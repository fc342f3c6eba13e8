"""Outbound snapshot pusher.

This module provides:
- OutboundSyncPusher: Debounced, fire-and-forget snapshot pushes

Each push is a full snapshot, so pushes need no ordering and a burst of
triggers can collapse into one transmission. Failures are reported to the
error sink and never change the connection state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from devicesync.client.signals import ErrorCategory, ErrorSink

if TYPE_CHECKING:
    from devicesync.client.store import LocalStore
    from devicesync.client.transport import DuplexTransport

logger = logging.getLogger(__name__)


class OutboundSyncPusher:
    """Pushes local state snapshots over the duplex connection.

    Lives on the engine's event loop. ``trigger()`` must be called from
    that loop (ConnectionManager.request_push() does the thread hop).
    """

    def __init__(
        self,
        store: LocalStore,
        sink: ErrorSink,
        debounce: float = 0.5,
    ) -> None:
        """Initialize the pusher.

        Args:
            store: Local store producing snapshots.
            sink: Error sink for failed pushes.
            debounce: Seconds to wait for further triggers before pushing.
        """
        self._store = store
        self._sink = sink
        self._debounce = debounce
        self._transport: DuplexTransport | None = None
        self._pending: asyncio.Task[None] | None = None
        self.push_count = 0
        self.last_push_at: datetime | None = None

    @property
    def pending(self) -> bool:
        """Check if a push is scheduled or running."""
        return self._pending is not None and not self._pending.done()

    def attach(self, transport: DuplexTransport) -> None:
        """Use this connection for subsequent pushes."""
        self._transport = transport

    def detach(self) -> None:
        """Forget the connection and drop any scheduled push."""
        self._transport = None
        if self._pending and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def trigger(self) -> None:
        """Schedule a push; triggers during the debounce window coalesce."""
        if self.pending:
            logger.debug("Push already scheduled, coalescing trigger")
            return
        self._pending = asyncio.get_running_loop().create_task(self._push_after_delay())

    async def wait_idle(self) -> None:
        """Wait for the scheduled push (if any) to finish."""
        if self._pending:
            with contextlib.suppress(asyncio.CancelledError):
                await self._pending

    async def _push_after_delay(self) -> None:
        await asyncio.sleep(self._debounce)
        await self.push_now()

    async def push_now(self) -> bool:
        """Build and send a snapshot immediately.

        Returns:
            True if the snapshot was sent.
        """
        transport = self._transport
        if transport is None:
            logger.debug("Not connected, skipping snapshot push")
            return False

        try:
            loop = asyncio.get_running_loop()
            snapshot = await loop.run_in_executor(None, self._store.snapshot)
            await transport.send(snapshot.to_message())
        except Exception as e:
            self._sink.report(ErrorCategory.PUSH, e)
            return False

        self.push_count += 1
        self.last_push_at = datetime.now(UTC)
        logger.info("Snapshot pushed")
        return True
