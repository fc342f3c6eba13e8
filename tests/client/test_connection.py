"""Tests for ConnectionManager."""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from devicesync.client.api import BackendClient, TokenGrant, TransportError
from devicesync.client.connection import ConnectionManager
from devicesync.client.handlers import build_dispatch_table
from devicesync.client.ingest import EventIngestionPipeline
from devicesync.client.pusher import OutboundSyncPusher
from devicesync.client.recovery import SessionRecovery
from devicesync.client.session_store import SessionStore
from devicesync.client.signals import EngineSignals
from devicesync.client.store import SQLiteLocalStore
from devicesync.core.config import EngineConfig, ServerConfig
from devicesync.core.crypto import generate_key
from devicesync.core.types import ConnectionState
from tests.client.fakes import (
    FakeBackend,
    event_frame,
    make_session,
    recovering_backend_client,
    wait_until,
)

FAST_CONFIG = EngineConfig(
    heartbeat_interval=0.05,
    reconnect_min_delay=0.01,
    reconnect_max_delay=0.05,
    max_reconnect_attempts=3,
    handshake_timeout=0.5,
    recovery_timeout=1.0,
    push_debounce=0.01,
    receive_timeout=0.05,
)

# Backoff long enough that a lost wake-up would stall the test
SLOW_BACKOFF_CONFIG = EngineConfig(
    reconnect_min_delay=30.0,
    reconnect_max_delay=30.0,
    max_reconnect_attempts=5,
    handshake_timeout=0.3,
    receive_timeout=0.05,
)


class Harness:
    """A ConnectionManager wired to a FakeBackend with real local stores."""

    def __init__(
        self,
        tmp_path: Path,
        backend: FakeBackend,
        backend_client: Any,
        config: EngineConfig = FAST_CONFIG,
    ) -> None:
        self.backend = backend
        self.session_store = SessionStore(tmp_path, generate_key())
        self.store = SQLiteLocalStore(tmp_path / "local.db")
        self.signals = EngineSignals()
        self.states: list[ConnectionState] = []
        self.recovered: list[bool] = []
        self.expired: list[bool] = []
        self.failed: list[int] = []
        self.data_changed: list[bool] = []

        self.signals.status_changed.connect(self.states.append)
        self.signals.session_recovered.connect(lambda: self.recovered.append(True))
        self.signals.session_expired.connect(self.expired.append)
        self.signals.connection_failed.connect(self.failed.append)
        self.signals.data_changed.connect(lambda: self.data_changed.append(True))

        handlers = build_dispatch_table()
        self.pusher = OutboundSyncPusher(self.store, self.signals.sink, config.push_debounce)
        self.manager = ConnectionManager(
            session_store=self.session_store,
            recovery=SessionRecovery(
                self.session_store, backend_client, self.signals, config.recovery_timeout
            ),
            transport_factory=backend.factory,
            pipeline_factory=lambda t: EventIngestionPipeline(
                self.store, t, handlers, self.signals
            ),
            pusher=self.pusher,
            signals=self.signals,
            config=config,
        )

    def close(self) -> None:
        self.manager.stop()
        self.store.close()


@pytest.fixture
def backend() -> FakeBackend:
    """Create a backend that accepts tok-1."""
    return FakeBackend(valid_tokens={"tok-1"})


@pytest.fixture
def harness(tmp_path: Path, backend: FakeBackend) -> Generator[Harness, None, None]:
    """Create a harness with a paired session stored."""
    h = Harness(tmp_path, backend, recovering_backend_client(backend))
    h.session_store.save(make_session("tok-1"))
    yield h
    h.close()


def connected(h: Harness) -> bool:
    return h.manager.state == ConnectionState.CONNECTED


class TestConnectionStartup:
    """Tests for starting the manager."""

    def test_stays_disconnected_without_session(self, tmp_path: Path, backend: FakeBackend) -> None:
        """Without a stored session nothing connects."""
        h = Harness(tmp_path, backend, MagicMock())
        try:
            h.manager.start()
            time.sleep(0.1)
            assert h.manager.state == ConnectionState.DISCONNECTED
            assert backend.connect_count == 0
            assert h.states == []
        finally:
            h.close()

    def test_stays_disconnected_when_unpaired(self, tmp_path: Path, backend: FakeBackend) -> None:
        """A stored but unpaired session does not connect."""
        h = Harness(tmp_path, backend, MagicMock())
        h.session_store.save(make_session(paired=False))
        try:
            h.manager.start()
            time.sleep(0.1)
            assert backend.connect_count == 0
        finally:
            h.close()

    def test_connects_with_paired_session(self, harness: Harness) -> None:
        """A paired session connects and emits connecting then connected."""
        harness.manager.start()

        assert wait_until(lambda: connected(harness))
        assert harness.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert harness.backend.connect_count == 1

    def test_pushes_snapshot_on_connect(self, harness: Harness) -> None:
        """Entering connected pushes a snapshot."""
        harness.store.upsert_task("t1", {"title": "Write report"})
        harness.manager.start()

        assert wait_until(lambda: len(harness.backend.snapshots) == 1)
        snapshot = harness.backend.snapshots[0]["snapshot"]
        assert [t["id"] for t in snapshot["tasks"]] == ["t1"]

    def test_sends_heartbeats(self, harness: Harness) -> None:
        """Heartbeats are sent periodically while connected."""
        harness.manager.start()

        assert wait_until(lambda: len(harness.backend.heartbeats) >= 2)

    def test_start_twice_is_noop(self, harness: Harness) -> None:
        """Starting a running manager does not spawn a second connection."""
        harness.manager.start()
        harness.manager.start()

        assert wait_until(lambda: connected(harness))
        time.sleep(0.1)
        assert harness.backend.connect_count == 1


class TestEventDelivery:
    """Tests for events arriving over the connection."""

    def test_applies_and_acknowledges_event(self, harness: Harness) -> None:
        """An event is applied, recorded, acknowledged and announced."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        harness.backend.publish(event_frame("evt-1", "task.created", {"id": "t1", "title": "A"}))

        assert wait_until(lambda: harness.backend.acks == ["evt-1"])
        assert harness.store.get_task("t1")["title"] == "A"
        assert harness.store.ledger_has("evt-1")
        assert len(harness.data_changed) == 1

    def test_duplicate_delivery_applies_once(self, harness: Harness) -> None:
        """A redelivered event is acknowledged without a second mutation."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        harness.backend.publish(
            event_frame("evt-7", "transaction.created", {"amount": 10, "category": "food"})
        )
        assert wait_until(lambda: harness.backend.acks == ["evt-7"])
        harness.backend.pending["evt-7"] = event_frame(
            "evt-7", "transaction.created", {"amount": 10, "category": "food"}
        )
        harness.backend.redeliver("evt-7")

        assert wait_until(lambda: harness.backend.acks == ["evt-7", "evt-7"])
        assert len(harness.store.list_transactions()) == 1
        assert harness.store.count_applied_events() == 1
        assert len(harness.data_changed) == 1

    def test_unknown_event_type_is_not_acknowledged(self, harness: Harness) -> None:
        """Unknown event types are dropped without ack or ledger row."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        harness.backend.publish(event_frame("evt-x", "habit.logged", {"id": "h1"}))
        harness.backend.publish(event_frame("evt-2", "task.created", {"id": "t2"}))

        assert wait_until(lambda: harness.backend.acks == ["evt-2"])
        assert not harness.store.ledger_has("evt-x")
        assert "evt-x" in harness.backend.pending

    def test_malformed_event_is_reported(self, harness: Harness) -> None:
        """Malformed event frames go to the error sink."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        transport = harness.backend.current
        assert transport is not None
        transport.deliver({"type": "event", "event": {"eventType": "task.created"}})

        assert wait_until(lambda: harness.signals.sink.counts.get("message") == 1)
        assert harness.backend.acks == []

    def test_unacknowledged_event_replayed_after_drop(self, harness: Harness) -> None:
        """An event whose handler failed is redelivered on reconnect and applied."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        # No project yet: the progress handler fails, so no ack
        harness.backend.publish(
            event_frame("evt-p", "progress.logged", {"projectId": "p1", "progress": 40})
        )
        assert wait_until(lambda: harness.signals.sink.counts.get("handler") == 1)
        assert harness.backend.acks == []

        harness.store.upsert_project("p1", {"name": "Thesis", "totalProgress": 0})
        harness.backend.drop()

        assert wait_until(lambda: harness.backend.acks == ["evt-p"])
        assert harness.store.get_project("p1")["totalProgress"] == 40
        assert harness.backend.connect_count == 2


    def test_ledger_lookup_failure_keeps_connection(self, harness: Harness) -> None:
        """A locked ledger fails the event but the engine stays connected."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        with patch.object(
            harness.store, "ledger_has", side_effect=sqlite3.OperationalError("database is locked")
        ):
            harness.backend.publish(event_frame("evt-1", "task.created", {"id": "t1"}))
            assert wait_until(lambda: harness.signals.sink.counts.get("ledger") == 1)

        assert harness.manager.running
        assert harness.manager.state == ConnectionState.CONNECTED
        assert harness.backend.acks == []

        harness.backend.redeliver("evt-1")

        assert wait_until(lambda: harness.backend.acks == ["evt-1"])
        assert harness.store.get_task("t1") is not None


class TestReconnection:
    """Tests for transport failures and backoff."""

    def test_reconnects_after_drop(self, harness: Harness) -> None:
        """A dropped connection goes back through connecting to connected."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        harness.backend.drop()

        assert wait_until(lambda: harness.backend.connect_count == 2 and connected(harness))
        assert harness.states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert wait_until(lambda: len(harness.backend.snapshots) == 2)

    def test_transient_failures_then_connects(self, harness: Harness) -> None:
        """Failures below the attempt ceiling are retried with backoff."""
        harness.backend.connect_errors = [
            TransportError("Connection failed"),
            TransportError("Connection failed"),
        ]
        harness.manager.start()

        assert wait_until(lambda: connected(harness))
        assert harness.backend.connect_count == 3
        assert harness.failed == []

    def test_gives_up_after_attempt_ceiling(self, harness: Harness) -> None:
        """Consecutive failures up to the ceiling surface connection_failed."""
        harness.backend.unreachable = True
        harness.manager.start()

        assert wait_until(lambda: harness.failed == [3])
        assert harness.manager.state == ConnectionState.DISCONNECTED
        time.sleep(0.1)
        assert harness.backend.connect_count == 3

    def test_reconnect_after_giving_up(self, harness: Harness) -> None:
        """reconnect() resumes retrying after connection_failed."""
        harness.backend.unreachable = True
        harness.manager.start()
        assert wait_until(lambda: harness.failed == [3])

        harness.backend.unreachable = False
        harness.manager.reconnect()

        assert wait_until(lambda: connected(harness))

    def test_unexpected_error_backs_off_and_reconnects(self, harness: Harness) -> None:
        """An unexpected failure is reported and the engine connects again."""
        harness.backend.connect_errors = [RuntimeError("boom")]
        harness.manager.start()

        assert wait_until(lambda: connected(harness))
        assert harness.manager.running
        assert harness.signals.sink.counts == {"connection": 1}
        assert harness.states == [
            ConnectionState.CONNECTING,
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]

    def test_handshake_timeout_is_transport_error(
        self, tmp_path: Path, backend: FakeBackend
    ) -> None:
        """A handshake that never completes counts as a failed attempt."""
        config = EngineConfig(
            reconnect_min_delay=0.01,
            reconnect_max_delay=0.01,
            max_reconnect_attempts=2,
            handshake_timeout=0.05,
            receive_timeout=0.05,
        )
        h = Harness(tmp_path, backend, MagicMock(), config=config)
        h.session_store.save(make_session("tok-1"))
        backend.hang_connect = True
        try:
            h.manager.start()
            assert wait_until(lambda: h.failed == [2])
            assert all(t.closed for t in backend.transports)
        finally:
            h.close()


class TestSessionRecovery:
    """Tests for the recovering state."""

    def test_recovers_silently(self, tmp_path: Path, backend: FakeBackend) -> None:
        """A rejected token is replaced and the connection resumes."""
        client = recovering_backend_client(backend, new_token="tok-new")
        h = Harness(tmp_path, backend, client)
        h.session_store.save(make_session("tok-stale"))
        try:
            h.manager.start()

            assert wait_until(lambda: connected(h))
            assert h.states == [
                ConnectionState.CONNECTING,
                ConnectionState.RECOVERING,
                ConnectionState.CONNECTING,
                ConnectionState.CONNECTED,
            ]
            assert h.recovered == [True]
            assert h.expired == []
            session = h.session_store.load()
            assert session is not None
            assert session.session_token == "tok-new"
            assert session.device_id == "dev-1"
            client.recover_session.assert_called_once()
        finally:
            h.close()

    def test_recovery_failure_requires_repair(self, tmp_path: Path, backend: FakeBackend) -> None:
        """A refused recovery ends disconnected with session_expired(False)."""
        client = recovering_backend_client(backend, succeed=False)
        h = Harness(tmp_path, backend, client)
        h.session_store.save(make_session("tok-stale"))
        try:
            h.manager.start()

            assert wait_until(lambda: h.expired == [False])
            assert h.manager.state == ConnectionState.DISCONNECTED
            assert h.manager.session_expired
            assert h.states[-2:] == [ConnectionState.RECOVERING, ConnectionState.DISCONNECTED]
            session = h.session_store.load()
            assert session is not None
            assert session.paired
            time.sleep(0.1)
            assert backend.connect_count == 1
        finally:
            h.close()

    def test_rejected_recovered_token_requires_repair(
        self, tmp_path: Path, backend: FakeBackend
    ) -> None:
        """A recovered token that is rejected again does not loop recovery."""
        client = MagicMock()
        client.recover_session.return_value = TokenGrant(
            session_token="tok-still-bad",
            expires_at=datetime.now(UTC) + timedelta(days=1),
        )
        h = Harness(tmp_path, backend, client)
        h.session_store.save(make_session("tok-stale"))
        try:
            h.manager.start()

            assert wait_until(lambda: h.expired == [False])
            client.recover_session.assert_called_once()
            assert backend.connect_count == 2
            assert h.manager.state == ConnectionState.DISCONNECTED
        finally:
            h.close()


    def test_token_rejected_after_drop_recovers(self, harness: Harness) -> None:
        """A token revoked while connected is recovered on the next handshake."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))
        assert wait_until(lambda: len(harness.backend.snapshots) == 1)

        with harness.backend._lock:
            harness.backend.valid_tokens.discard("tok-1")
        harness.backend.drop()

        assert wait_until(lambda: harness.backend.connect_count == 3 and connected(harness))
        assert harness.states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.RECOVERING,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert harness.recovered == [True]
        assert harness.expired == []
        assert wait_until(lambda: len(harness.backend.snapshots) == 2)
        time.sleep(0.1)
        assert len(harness.backend.snapshots) == 2

    def test_token_rejected_after_drop_requires_repair(
        self, tmp_path: Path, backend: FakeBackend
    ) -> None:
        """A revoked token that cannot be recovered ends disconnected."""
        h = Harness(tmp_path, backend, recovering_backend_client(backend, succeed=False))
        h.session_store.save(make_session("tok-1"))
        try:
            h.manager.start()
            assert wait_until(lambda: connected(h))
            assert wait_until(lambda: len(backend.snapshots) == 1)

            with backend._lock:
                backend.valid_tokens.discard("tok-1")
            backend.drop()

            assert wait_until(lambda: h.expired == [False])
            assert h.states == [
                ConnectionState.CONNECTING,
                ConnectionState.CONNECTED,
                ConnectionState.CONNECTING,
                ConnectionState.RECOVERING,
                ConnectionState.DISCONNECTED,
            ]
            assert h.recovered == []
            assert h.manager.running
            time.sleep(0.1)
            assert backend.connect_count == 2
            assert len(backend.snapshots) == 1
        finally:
            h.close()

    def test_malformed_recovery_response_requires_repair(
        self, tmp_path: Path, backend: FakeBackend
    ) -> None:
        """A recovery answer without a token counts as a failed recovery."""
        client = BackendClient(
            ServerConfig(server_url="http://test"),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )
        h = Harness(tmp_path, backend, client)
        h.session_store.save(make_session("tok-stale"))
        try:
            h.manager.start()

            assert wait_until(lambda: h.expired == [False])
            assert h.states == [
                ConnectionState.CONNECTING,
                ConnectionState.RECOVERING,
                ConnectionState.DISCONNECTED,
            ]
            assert h.manager.running
            session = h.session_store.load()
            assert session is not None
            assert session.paired
        finally:
            h.close()
            client.close()


class TestControl:
    """Tests for stop, disconnect, reconnect and push requests."""

    def test_stop_closes_transport(self, harness: Harness) -> None:
        """stop() closes the transport and ends disconnected without reconnecting."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))
        transport = harness.backend.current

        harness.manager.stop()

        assert transport is not None and transport.closed
        assert harness.manager.state == ConnectionState.DISCONNECTED
        assert harness.states[-1] == ConnectionState.DISCONNECTED
        assert not harness.manager.running
        assert harness.backend.connect_count == 1

    def test_disconnect_stays_disconnected(self, harness: Harness) -> None:
        """disconnect() drops the connection and does not retry."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        harness.manager.disconnect()

        assert wait_until(lambda: harness.manager.state == ConnectionState.DISCONNECTED)
        time.sleep(0.1)
        assert harness.backend.connect_count == 1
        assert harness.manager.running

    def test_reconnect_while_connected_handshakes_again(self, harness: Harness) -> None:
        """reconnect() while connected opens a fresh connection."""
        harness.manager.start()
        assert wait_until(lambda: connected(harness))

        harness.manager.reconnect()

        assert wait_until(lambda: harness.backend.connect_count == 2 and connected(harness))
        assert harness.backend.transports[0].closed

    def test_request_push_coalesces(self, tmp_path: Path, backend: FakeBackend) -> None:
        """Rapid push requests collapse into a single snapshot."""
        config = EngineConfig(
            heartbeat_interval=10.0,
            push_debounce=0.2,
            receive_timeout=0.05,
        )
        h = Harness(tmp_path, backend, MagicMock(), config=config)
        h.session_store.save(make_session("tok-1"))
        try:
            h.manager.start()
            assert wait_until(lambda: len(backend.snapshots) == 1)

            for _ in range(5):
                h.manager.request_push()

            assert wait_until(lambda: len(backend.snapshots) == 2)
            time.sleep(0.4)
            assert len(backend.snapshots) == 2
        finally:
            h.close()

    def test_stop_during_handshake_skips_backoff(
        self, tmp_path: Path, backend: FakeBackend
    ) -> None:
        """stop() sent while a handshake is pending ends the thread promptly."""
        h = Harness(tmp_path, backend, MagicMock(), config=SLOW_BACKOFF_CONFIG)
        h.session_store.save(make_session("tok-1"))
        backend.hang_connect = True
        try:
            h.manager.start()
            assert wait_until(lambda: len(backend.transports) == 1)

            started = time.monotonic()
            h.manager.stop(timeout=2.0)

            assert not h.manager.running
            assert time.monotonic() - started < 2.0
            assert h.manager.state == ConnectionState.DISCONNECTED
        finally:
            h.close()

    def test_disconnect_during_handshake_skips_backoff(
        self, tmp_path: Path, backend: FakeBackend
    ) -> None:
        """disconnect() sent while a handshake is pending is not lost."""
        h = Harness(tmp_path, backend, MagicMock(), config=SLOW_BACKOFF_CONFIG)
        h.session_store.save(make_session("tok-1"))
        backend.hang_connect = True
        try:
            h.manager.start()
            assert wait_until(lambda: len(backend.transports) == 1)

            h.manager.disconnect()

            assert wait_until(
                lambda: h.states[-1:] == [ConnectionState.DISCONNECTED], timeout=2.0
            )
            assert len(backend.transports) == 1
            assert h.manager.running
        finally:
            h.close()

    def test_request_push_when_stopped_is_ignored(self, harness: Harness) -> None:
        """request_push() before start() does nothing."""
        harness.manager.request_push()

        assert harness.backend.snapshots == []
