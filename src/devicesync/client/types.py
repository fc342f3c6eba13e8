"""Shared types for the sync engine.

This module provides:
- EventType: Known remote event tags
- RemoteEvent: An inbound event from the backend
- AppliedEventRecord: A row of the idempotency ledger
- OutboundSnapshot: Local state pushed to the backend
- IngestOutcome: Result of processing one inbound event
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class InvalidEventError(ValueError):
    """Inbound event message is malformed."""


class EventType(str, Enum):
    """Tags of the remote events the engine knows how to apply."""

    TASK_CREATED = "task.created"
    TASK_UPDATED = "task.updated"
    TASK_DELETED = "task.deleted"
    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROGRESS_LOGGED = "progress.logged"
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_UPDATED = "transaction.updated"
    TRANSACTION_DELETED = "transaction.deleted"

    @classmethod
    def parse(cls, tag: str) -> EventType | None:
        """Resolve a wire tag, accepting ``task-created`` as ``task.created``.

        Returns:
            The matching EventType, or None for unknown tags.
        """
        try:
            return cls(tag.strip().lower().replace("-", ".").replace("_", "."))
        except ValueError:
            return None


class IngestOutcome(str, Enum):
    """What the ingestion pipeline did with an event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    UNRECORDED = "unrecorded"
    UNKNOWN_TYPE = "unknown_type"


@dataclass(frozen=True)
class RemoteEvent:
    """Inbound event delivered by the backend (at-least-once).

    Attributes:
        event_id: Globally unique id, the sole deduplication key.
        event_type: Wire tag (see EventType).
        payload: Structured data owned by the matching handler.
        source: Delivery channel that produced the event.
        timestamp: Producer timestamp, informational only.
    """

    event_id: str
    event_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    source: str = "remote"
    timestamp: str | None = None

    @classmethod
    def from_message(cls, data: Mapping[str, Any]) -> RemoteEvent:
        """Parse the wire form of an event.

        Args:
            data: Mapping with eventId, eventType, payload and optional
                source and timestamp.

        Raises:
            InvalidEventError: If id or type are missing or payload is not a mapping.
        """
        event_id = data.get("eventId")
        event_type = data.get("eventType")
        payload = data.get("payload", {})

        if not isinstance(event_id, str) or not event_id:
            raise InvalidEventError("Event is missing eventId")
        if not isinstance(event_type, str) or not event_type:
            raise InvalidEventError(f"Event {event_id} is missing eventType")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise InvalidEventError(f"Event {event_id} payload is not an object")

        return cls(
            event_id=event_id,
            event_type=event_type,
            payload=dict(payload),
            source=str(data.get("source") or "remote"),
            timestamp=data.get("timestamp"),
        )

    def to_message(self) -> dict[str, Any]:
        """Convert to the wire form."""
        message: dict[str, Any] = {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "payload": dict(self.payload),
            "source": self.source,
        }
        if self.timestamp:
            message["timestamp"] = self.timestamp
        return message


@dataclass(frozen=True)
class AppliedEventRecord:
    """Proof that an event's domain effect has been committed."""

    event_id: str
    event_type: str
    applied_at: datetime
    source: str

    @classmethod
    def for_event(cls, event: RemoteEvent) -> AppliedEventRecord:
        """Create a ledger record for an event applied now."""
        return cls(
            event_id=event.event_id,
            event_type=event.event_type,
            applied_at=datetime.now(UTC),
            source=event.source,
        )


@dataclass
class OutboundSnapshot:
    """Full point-in-time serialization of local domain state."""

    data: dict[str, Any]
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict[str, Any]:
        """Wrap the snapshot into a duplex frame."""
        return {
            "type": "snapshot",
            "generatedAt": self.generated_at.isoformat(),
            "snapshot": self.data,
        }
