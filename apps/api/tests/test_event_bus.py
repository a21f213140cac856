from __future__ import annotations

from orgsuite.core.events import InProcessEventBus, InternalEvent


def test_exact_and_namespace_subscribers_both_receive_events() -> None:
    bus = InProcessEventBus()
    received: list[tuple[str, str]] = []

    def exact(event: InternalEvent) -> None:
        received.append(("exact", event.name))

    def namespace(event: InternalEvent) -> None:
        received.append(("namespace", event.name))

    bus.subscribe("invitation.accepted", exact)
    bus.subscribe("invitation.*", namespace)
    bus.subscribe("invitation.*", namespace)

    bus.publish("invitation.accepted", {"invitation_id": "i-1"})
    bus.publish("invitation.revoked", {"invitation_id": "i-2"})
    bus.publish("entity.moved", {"entity_id": "e-1"})

    assert received == [
        ("exact", "invitation.accepted"),
        ("namespace", "invitation.accepted"),
        ("namespace", "invitation.revoked"),
    ]


def test_unsubscribe_stops_delivery() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def handler(event: InternalEvent) -> None:
        seen.append(event.name)

    bus.subscribe("entity.*", handler)
    bus.publish("entity.created", {})
    bus.unsubscribe("entity.*", handler)
    bus.publish("entity.moved", {})

    assert seen == ["entity.created"]
    assert bus.handlers_for("entity.moved") == []
