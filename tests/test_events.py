"""
Tests for change events and the event bus.
"""

import pytest
from pydantic import ValidationError as SchemaError

from nextup.errors import ItemNotFoundError
from nextup.events import (
    CollectionClearedEvent,
    EventBus,
    EventType,
    ItemAddedEvent,
    ItemRemovedEvent,
    ItemUpdatedEvent,
    parse_event,
)
from nextup.metrics import collection_events_total, listener_failures_total
from nextup.schemas import CollectionStatus


class TestEventBus:
    """Subscribing to and emitting events."""

    def test_listeners_receive_events_in_subscription_order(self):
        """Listeners are called in the order they subscribed."""
        bus = EventBus()
        received = []
        bus.subscribe(lambda e: received.append(("first", e.type)))
        bus.subscribe(lambda e: received.append(("second", e.type)))

        bus.emit(ItemRemovedEvent(item_id="x"))

        assert received == [("first", EventType.ITEM_REMOVED), ("second", EventType.ITEM_REMOVED)]

    def test_unsubscribe(self):
        """Unsubscribing stops delivery and is idempotent."""
        bus = EventBus()
        received = []
        subscription = bus.subscribe(received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        bus.emit(ItemRemovedEvent(item_id="x"))

        assert received == []
        assert subscription.active is False
        assert bus.listener_count == 0

    def test_subscription_as_context_manager(self):
        """Leaving the with block unsubscribes."""
        bus = EventBus()
        received = []
        with bus.subscribe(received.append):
            bus.emit(ItemRemovedEvent(item_id="a"))
        bus.emit(ItemRemovedEvent(item_id="b"))

        assert [e.item_id for e in received] == ["a"]

    def test_same_listener_subscribed_twice_gets_two_handles(self):
        """Each subscription has its own handle."""
        bus = EventBus()
        received = []
        first = bus.subscribe(received.append)
        bus.subscribe(received.append)

        first.unsubscribe()
        bus.emit(ItemRemovedEvent(item_id="x"))

        assert len(received) == 1

    def test_failing_listener_does_not_stop_others(self):
        """A raising listener is counted and skipped."""
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        before = listener_failures_total.labels(event_type="ITEM_REMOVED")._value.get()

        bus.emit(ItemRemovedEvent(item_id="x"))

        assert len(received) == 1
        assert listener_failures_total.labels(event_type="ITEM_REMOVED")._value.get() == before + 1

    def test_listener_unsubscribing_during_emit(self):
        """A listener may unsubscribe itself while being called."""
        bus = EventBus()
        received = []
        handles = []

        def once(event):
            received.append(event)
            handles[0].unsubscribe()

        handles.append(bus.subscribe(once))
        bus.emit(ItemRemovedEvent(item_id="a"))
        bus.emit(ItemRemovedEvent(item_id="b"))

        assert len(received) == 1

    def test_emits_are_counted(self):
        """Every emit increments the event counter."""
        before = collection_events_total.labels(event_type="COLLECTION_CLEARED")._value.get()
        EventBus().emit(CollectionClearedEvent(status=CollectionStatus.WATCHED))
        assert collection_events_total.labels(event_type="COLLECTION_CLEARED")._value.get() == before + 1


class TestEventModels:
    """Event model parsing and immutability."""

    def test_parse_event_picks_model_from_type(self):
        """The type field selects the event model."""
        event = parse_event({"type": "COLLECTION_CLEARED", "status": "watching"})
        assert isinstance(event, CollectionClearedEvent)
        assert event.status == CollectionStatus.WATCHING

    def test_parse_event_rejects_unknown_type(self):
        """Unknown event types fail validation."""
        with pytest.raises(SchemaError):
            parse_event({"type": "SOMETHING_ELSE"})

    def test_events_are_immutable(self):
        """Event fields cannot be reassigned."""
        event = ItemRemovedEvent(item_id="x")
        with pytest.raises(SchemaError):
            event.item_id = "y"


class TestManagerEvents:
    """Events emitted by DataManager mutations."""

    def test_each_mutation_emits_one_event(self, manager, make_media):
        """Each mutation emits exactly one matching event."""
        events = []
        manager.add_listener(events.append)

        item = manager.add_item(make_media(1), CollectionStatus.WILL_WATCH)
        manager.update_item_status(item.id, CollectionStatus.WATCHING)
        manager.update_item_progress(item.id, 10)
        manager.remove_item(item.id)
        manager.clear_collection(CollectionStatus.WATCHED)

        assert [e.type for e in events] == [
            EventType.ITEM_ADDED,
            EventType.ITEM_UPDATED,
            EventType.ITEM_UPDATED,
            EventType.ITEM_REMOVED,
            EventType.COLLECTION_CLEARED,
        ]
        assert isinstance(events[0], ItemAddedEvent) and events[0].item == item
        assert isinstance(events[2], ItemUpdatedEvent) and events[2].item.progress == 10
        assert events[3].item_id == item.id
        assert events[4].status == CollectionStatus.WATCHED

    def test_event_is_emitted_after_persist(self, manager, make_media):
        """Listeners see the change already stored."""
        seen = []
        manager.add_listener(lambda e: seen.append(manager.find_item_by_media_id(1)))

        manager.add_item(make_media(1), CollectionStatus.WATCHED)

        assert seen[0] is not None

    def test_failed_mutation_emits_nothing(self, manager):
        """A failed mutation emits no event."""
        events = []
        manager.add_listener(events.append)
        with pytest.raises(ItemNotFoundError):
            manager.remove_item("missing")
        assert events == []

    def test_listener_error_does_not_fail_mutation(self, manager, make_media):
        """A raising listener does not undo the mutation."""
        def broken(event):
            raise ValueError("boom")

        manager.add_listener(broken)
        item = manager.add_item(make_media(1), CollectionStatus.WATCHED)
        assert manager.get_all_items() == [item]

    def test_listener_may_call_back_into_manager(self, manager, make_media):
        """Listeners may mutate the manager again."""
        added = []

        def follow_up(event):
            if event.type == EventType.ITEM_ADDED and event.item.media_item.id == 1:
                added.append(manager.add_item(make_media(2), CollectionStatus.WILL_WATCH))

        manager.add_listener(follow_up)
        manager.add_item(make_media(1), CollectionStatus.WATCHED)

        assert len(added) == 1
        assert len(manager.get_all_items()) == 2
