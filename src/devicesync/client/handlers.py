"""Domain mutation handlers for remote events.

This module provides:
- EventHandler: Signature of a handler
- DEFAULT_HANDLERS: Handlers applying each EventType to a LocalStore
- build_dispatch_table: Resolve the EventType -> handler table once

Each handler uses the event's natural identifier as the entity id:
``payload["id"]`` when the producer assigned one, otherwise the event id
itself. A duplicate delivery that slips past the ledger then upserts the
same row instead of creating a second entity.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from devicesync.client.store import LocalStore
from devicesync.client.types import EventType, RemoteEvent

EventHandler = Callable[[LocalStore, RemoteEvent], None]


class HandlerError(Exception):
    """Event payload cannot be applied."""


def _natural_id(event: RemoteEvent, *keys: str) -> str:
    """Entity id carried by the event, falling back to the event id."""
    for key in (*keys, "id"):
        value = event.payload.get(key)
        if value:
            return str(value)
    return event.event_id


def _required_id(event: RemoteEvent, *keys: str) -> str:
    """Entity id of an existing entity; updates and deletes must name one."""
    for key in (*keys, "id"):
        value = event.payload.get(key)
        if value:
            return str(value)
    raise HandlerError(f"{event.event_type} event {event.event_id} has no {keys[0]}")


def _fields(event: RemoteEvent, *exclude: str) -> dict[str, Any]:
    return {k: v for k, v in event.payload.items() if k not in {"id", *exclude}}


def apply_task_created(store: LocalStore, event: RemoteEvent) -> None:
    store.upsert_task(_natural_id(event, "taskId"), _fields(event, "taskId"))


def apply_task_updated(store: LocalStore, event: RemoteEvent) -> None:
    store.upsert_task(_required_id(event, "taskId"), _fields(event, "taskId"))


def apply_task_deleted(store: LocalStore, event: RemoteEvent) -> None:
    store.delete_task(_required_id(event, "taskId"))


def apply_project_created(store: LocalStore, event: RemoteEvent) -> None:
    fields = _fields(event, "projectId")
    fields.setdefault("status", "active")
    fields.setdefault("totalProgress", 0)
    store.upsert_project(_natural_id(event, "projectId"), fields)


def apply_project_updated(store: LocalStore, event: RemoteEvent) -> None:
    store.upsert_project(_required_id(event, "projectId"), _fields(event, "projectId"))


def apply_progress_logged(store: LocalStore, event: RemoteEvent) -> None:
    """Record a progress log; the project must already exist."""
    project_id = event.payload.get("projectId")
    if not project_id:
        raise HandlerError(f"progress event {event.event_id} has no projectId")
    store.log_progress(_natural_id(event, "logId"), str(project_id), _fields(event, "logId"))


def apply_transaction_created(store: LocalStore, event: RemoteEvent) -> None:
    store.upsert_transaction(
        _natural_id(event, "transactionId"), _fields(event, "transactionId")
    )


def apply_transaction_updated(store: LocalStore, event: RemoteEvent) -> None:
    store.upsert_transaction(
        _required_id(event, "transactionId"), _fields(event, "transactionId")
    )


def apply_transaction_deleted(store: LocalStore, event: RemoteEvent) -> None:
    store.delete_transaction(_required_id(event, "transactionId"))


DEFAULT_HANDLERS: dict[EventType, EventHandler] = {
    EventType.TASK_CREATED: apply_task_created,
    EventType.TASK_UPDATED: apply_task_updated,
    EventType.TASK_DELETED: apply_task_deleted,
    EventType.PROJECT_CREATED: apply_project_created,
    EventType.PROJECT_UPDATED: apply_project_updated,
    EventType.PROGRESS_LOGGED: apply_progress_logged,
    EventType.TRANSACTION_CREATED: apply_transaction_created,
    EventType.TRANSACTION_UPDATED: apply_transaction_updated,
    EventType.TRANSACTION_DELETED: apply_transaction_deleted,
}


def build_dispatch_table(
    overrides: Mapping[EventType, EventHandler] | None = None,
) -> dict[EventType, EventHandler]:
    """Build the dispatch table used by the ingestion pipeline.

    Args:
        overrides: Handlers replacing (or adding to) the defaults.

    Returns:
        Mapping of EventType to handler.
    """
    table = dict(DEFAULT_HANDLERS)
    if overrides:
        table.update(overrides)
    return table
