"""Publish/subscribe synchrone pour notifier les observateurs des transitions d'état."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Tuple

from collections.abc import Callable


class SegmentationEvents(Enum):
    # segments added/removed/modified, lock or visibility changes, etc.
    SEGMENTATION_UPDATED = "event::segmentation_updated"
    # labelmap voxels modified
    SEGMENTATION_DATA_MODIFIED = "event::segmentation_data_modified"
    SEGMENTATION_ADDED = "event::segmentation_added"
    SEGMENTATION_REMOVED = "event::segmentation_removed"
    # brush size, fill, outline width, ...
    SEGMENTATION_CONFIGURATION_CHANGED = "event::segmentation_configuration_changed"


Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class SubscriptionToken:
    event: SegmentationEvents
    token_id: int


class EventBroadcaster:
    """
    Inline publish/subscribe.

    Handlers run on the publisher's call stack, in subscription order, once per
    publish. Exceptions raised by a handler propagate to the publisher. A handler
    may itself publish (reentrancy is allowed); handlers subscribed while a
    publish is running are only called by later publishes.
    """

    def __init__(self) -> None:
        self._handlers: Dict[SegmentationEvents, List[Tuple[int, Handler]]] = {}
        self._ids = itertools.count(1)
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event: SegmentationEvents, handler: Handler) -> SubscriptionToken:
        if not callable(handler):
            raise TypeError(f"Handler for {event} must be callable")
        token = SubscriptionToken(event=event, token_id=next(self._ids))
        self._handlers.setdefault(event, []).append((token.token_id, handler))
        return token

    def unsubscribe(self, token: SubscriptionToken) -> bool:
        """Remove a subscription; returns False if the token was already gone."""
        handlers = self._handlers.get(token.event)
        if not handlers:
            return False
        for position, (token_id, _) in enumerate(handlers):
            if token_id == token.token_id:
                del handlers[position]
                return True
        return False

    def publish(self, event: SegmentationEvents, payload: Any) -> None:
        handlers = list(self._handlers.get(event, ()))
        self.logger.debug("Publish %s to %d handler(s)", event.value, len(handlers))
        for _, handler in handlers:
            handler(payload)

    def subscriber_count(self, event: SegmentationEvents) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()
