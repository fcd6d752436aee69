"""
In-process publish/subscribe hub for live dashboard notifications.

Each subscriber owns a bounded asyncio.Queue. Publishing never waits:
a subscriber whose queue is full simply misses the event, and a scope
with no subscribers is a normal, silent case. Message history stays
queryable from the store, so dropped events are acceptable.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from chatseal.config import settings
from chatseal.schemas import MessageResponse

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new_message"


class NotificationHub:
    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.NOTIFICATION_QUEUE_SIZE
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, scope: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[scope].add(queue)
        logger.info(f"Subscriber joined scope={scope} subscribers={len(self._subscribers[scope])}")
        return queue

    def unsubscribe(self, scope: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(scope)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[scope]
        logger.info(f"Subscriber left scope={scope}")

    def subscriber_count(self, scope: str) -> int:
        return len(self._subscribers.get(scope, ()))

    def publish(self, scope: str, event: str, data: Any) -> int:
        """
        Fan an event out to every current subscriber of a scope.

        Returns:
            Number of subscribers the event was queued for.
        """
        payload = {"event": event, "data": data}
        delivered = 0
        for queue in list(self._subscribers.get(scope, ())):
            try:
                queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event} for slow subscriber in scope={scope}")
        logger.debug(f"Published {event} to scope={scope} delivered={delivered}")
        return delivered


hub = NotificationHub()


def get_hub() -> NotificationHub:
    return hub


async def stream_to_websocket(websocket: WebSocket, hub: NotificationHub, scope: str) -> None:
    """Forward a scope's events to a WebSocket until the client goes away."""
    # Subscribe before accepting so nothing published after the handshake is missed
    queue = hub.subscribe(scope)
    receiver = getter = None
    try:
        await websocket.accept()
        receiver = asyncio.ensure_future(websocket.receive())
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await websocket.send_json(getter.result())
            else:
                getter.cancel()
            if receiver in done:
                # Client frames of any kind are ignored; only a disconnect matters
                if receiver.result().get("type") == "websocket.disconnect":
                    break
                receiver = asyncio.ensure_future(websocket.receive())
    except WebSocketDisconnect:
        logger.debug(f"Client went away mid-send scope={scope}")
    finally:
        logger.info(f"WebSocket disconnected scope={scope}")
        for task in (receiver, getter):
            if task is not None:
                task.cancel()
        hub.unsubscribe(scope, queue)


def publish_new_message(hub: NotificationHub, message) -> int:
    """Notify a tenant's viewers about a freshly stored message."""
    data = MessageResponse.model_validate(message).model_dump(mode="json", by_alias=True)
    return hub.publish(message.tenant_id, NEW_MESSAGE_EVENT, data)
