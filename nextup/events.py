"""
Change events published by the data manager.

Events form a closed set discriminated on ``type``. Listeners subscribe to an
EventBus and get back a Subscription handle used to unsubscribe.
"""

import threading
from enum import Enum
from typing import Annotated, Callable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from nextup.logging_config import get_logger
from nextup.metrics import track_event, track_listener_failure
from nextup.schemas import CollectionItem, CollectionStatus, UserProfile

logger = get_logger(__name__)


class EventType(str, Enum):
    ITEM_ADDED = "ITEM_ADDED"
    ITEM_REMOVED = "ITEM_REMOVED"
    ITEM_UPDATED = "ITEM_UPDATED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    COLLECTION_CLEARED = "COLLECTION_CLEARED"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class ItemAddedEvent(_Event):
    type: Literal[EventType.ITEM_ADDED] = EventType.ITEM_ADDED
    item: CollectionItem


class ItemRemovedEvent(_Event):
    type: Literal[EventType.ITEM_REMOVED] = EventType.ITEM_REMOVED
    item_id: str


class ItemUpdatedEvent(_Event):
    type: Literal[EventType.ITEM_UPDATED] = EventType.ITEM_UPDATED
    item: CollectionItem


class ProfileUpdatedEvent(_Event):
    type: Literal[EventType.PROFILE_UPDATED] = EventType.PROFILE_UPDATED
    # None when the profile was removed
    profile: Optional[UserProfile]


class CollectionClearedEvent(_Event):
    type: Literal[EventType.COLLECTION_CLEARED] = EventType.COLLECTION_CLEARED
    status: CollectionStatus


DataChangeEvent = Annotated[
    Union[
        ItemAddedEvent,
        ItemRemovedEvent,
        ItemUpdatedEvent,
        ProfileUpdatedEvent,
        CollectionClearedEvent,
    ],
    Field(discriminator="type"),
]

DataChangeListener = Callable[[DataChangeEvent], None]

_event_adapter = TypeAdapter(DataChangeEvent)


def parse_event(data: dict) -> DataChangeEvent:
    """Build the matching event model from a dict carrying a ``type`` tag."""
    return _event_adapter.validate_python(data)


class Subscription:
    """Handle returned by EventBus.subscribe. Also usable as a context manager."""

    def __init__(self, bus: "EventBus", listener: DataChangeListener):
        self._bus = bus
        self.listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivering events to this listener. Safe to call twice."""
        if self._active:
            self._active = False
            self._bus._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unsubscribe()


class EventBus:
    """Synchronous fan-out of change events to subscribed listeners."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: DataChangeListener) -> Subscription:
        subscription = Subscription(self, listener)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def emit(self, event: DataChangeEvent) -> None:
        """
        Deliver ``event`` to every current listener, in subscription order.

        A listener that raises is logged and skipped; the remaining listeners
        still run and the exception never reaches the emitter.
        """
        with self._lock:
            snapshot = list(self._subscriptions)

        track_event(event.type.value)
        for subscription in snapshot:
            if not subscription.active:
                continue
            try:
                subscription.listener(event)
            except Exception as e:
                track_listener_failure(event.type.value)
                logger.warning(
                    "listener_failed",
                    event_type=event.type.value,
                    listener=repr(subscription.listener),
                    error=str(e),
                    exc_info=True,
                )
