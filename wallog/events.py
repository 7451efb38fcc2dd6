from collections import defaultdict
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Awaitable
from typing import Callable

from loguru import logger

Handler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class ContentPublished:
    local_post_id: str
    content: str
    username: str | None = None
    title: str | None = None
    url: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ContentDeleted:
    local_post_id: str
    username: str | None = None


class EventBus:
    """In-process feed of local content changes."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Registers `handler`, returns the callable that unregisters it."""
        self._handlers[event_type].append(handler)

        def unregister() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return unregister

    async def publish(self, event: Any) -> None:
        handlers = list(self._handlers[type(event)])
        logger.info(f"Publishing {type(event).__name__} to {len(handlers)} handler(s)")
        for handler in handlers:
            await handler(event)
