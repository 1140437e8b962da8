from __future__ import annotations

from typing import Any

from app.context import get_correlation_id, get_organization_id
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Record a domain event and fan it out on the in-process bus.

    Missing ``correlation_id``/``organization_id`` are filled from the request context.
    """

    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("organization_id") is None:
        organization_id = get_organization_id()
        if organization_id is not None:
            envelope["organization_id"] = organization_id

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [item for item in published_events if item.get("event_type") == event_type]
