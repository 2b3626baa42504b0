"""
Typed observer channels used by the engine components.

Each component exposes one EventChannel per notification it emits. Handlers
are synchronous and are called in subscription order; a handler that needs to
do async work should schedule it with asyncio.create_task().
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Subscription:
    """Handle returned by EventChannel.subscribe"""
    channel: "EventChannel"
    handler: Callable

    def cancel(self) -> None:
        self.channel.unsubscribe(self.handler)


class EventChannel(Generic[T]):
    """A single named notification with an explicit subscriber list"""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []

    def subscribe(self, handler: Callable[[T], None]) -> Subscription:
        if asyncio.iscoroutinefunction(handler):
            raise TypeError(
                f"Handlers for '{self.name}' must be synchronous; "
                f"schedule async work with asyncio.create_task() instead"
            )
        if handler not in self._handlers:
            self._handlers.append(handler)
        return Subscription(self, handler)

    def unsubscribe(self, handler: Callable[[T], None]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            logger.debug(f"Handler not subscribed to {self.name}")

    def publish(self, payload: T) -> None:
        for handler in list(self._handlers):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Error in handler for {self.name}: {e}", exc_info=True)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)
