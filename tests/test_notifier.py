"""
Tests for the live notification hub and its WebSocket feed.

Tests cover:
- Fan-out to the subscribers of one scope only
- Bounded queues dropping events for slow subscribers
- The /api/whatsapp/ws/{tenant_id} feed end to end
"""

import asyncio
import hmac
import hashlib
import json

from chatseal.config import settings
from chatseal.notifier import NEW_MESSAGE_EVENT, NotificationHub


def compute_signature(body: str, secret: str) -> str:
    """Compute the X-Hub-Signature-256 value for a request body."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_inbound(client, tenant, wa_message_id: str, text: str):
    """Deliver one signed inbound text message for the tenant."""
    body = json.dumps({
        "entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": tenant.phone_number_id},
            "messages": [{
                "id": wa_message_id,
                "from": "2348000000000",
                "type": "text",
                "text": {"body": text},
                "timestamp": "1700000000",
            }],
        }}]}],
    })
    return client.post(
        "/api/whatsapp/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Hub-Signature-256": compute_signature(body, settings.META_APP_SECRET),
        },
    )


class TestNotificationHub:
    """Test publish/subscribe semantics of NotificationHub."""

    def test_publish_reaches_every_subscriber_of_scope(self):
        """Test an event reaches all subscribers of its scope and no others."""
        async def scenario():
            hub = NotificationHub(queue_size=10)
            first = hub.subscribe("tenant-a")
            second = hub.subscribe("tenant-a")
            other = hub.subscribe("tenant-b")

            delivered = hub.publish("tenant-a", NEW_MESSAGE_EVENT, {"id": "m1"})

            assert delivered == 2
            assert await first.get() == {"event": "new_message", "data": {"id": "m1"}}
            assert await second.get() == {"event": "new_message", "data": {"id": "m1"}}
            assert other.empty()

        asyncio.run(scenario())

    def test_publish_without_subscribers(self):
        """Test publishing to an empty scope is a silent no-op."""
        hub = NotificationHub(queue_size=10)

        assert hub.publish("nobody", NEW_MESSAGE_EVENT, {}) == 0

    def test_full_queue_drops_event(self):
        """Test a full subscriber queue drops the new event instead of blocking."""
        hub = NotificationHub(queue_size=1)
        slow = hub.subscribe("tenant-a")

        assert hub.publish("tenant-a", NEW_MESSAGE_EVENT, {"n": 1}) == 1
        assert hub.publish("tenant-a", NEW_MESSAGE_EVENT, {"n": 2}) == 0
        assert slow.get_nowait()["data"] == {"n": 1}
        assert slow.empty()

    def test_slow_subscriber_does_not_block_others(self):
        """Test one full queue does not stop delivery to other subscribers."""
        hub = NotificationHub(queue_size=1)
        slow = hub.subscribe("tenant-a")
        hub.publish("tenant-a", NEW_MESSAGE_EVENT, {"n": 1})
        fresh = hub.subscribe("tenant-a")

        assert hub.publish("tenant-a", NEW_MESSAGE_EVENT, {"n": 2}) == 1
        assert fresh.get_nowait()["data"] == {"n": 2}
        assert slow.qsize() == 1

    def test_unsubscribe(self):
        """Test unsubscribing is idempotent and stops delivery."""
        hub = NotificationHub(queue_size=10)
        queue = hub.subscribe("tenant-a")

        hub.unsubscribe("tenant-a", queue)
        hub.unsubscribe("tenant-a", queue)

        assert hub.subscriber_count("tenant-a") == 0
        assert hub.publish("tenant-a", NEW_MESSAGE_EVENT, {}) == 0


class TestWebSocketFeed:
    """Test the per-tenant WebSocket feed."""

    def test_inbound_message_pushed_to_socket(self, client, tenant):
        """Test a stored inbound message is pushed to the tenant's socket."""
        with client.websocket_connect(f"/api/whatsapp/ws/{tenant.id}") as websocket:
            response = post_inbound(client, tenant, "wamid.ws", "live")
            assert response.status_code == 200

            event = websocket.receive_json()

        assert event["event"] == "new_message"
        assert event["data"]["message"] == "live"
        assert event["data"]["tenantId"] == tenant.id
        assert event["data"]["timestamp"] in ("2023-11-14T22:13:20Z", "2023-11-14T22:13:20+00:00")

    def test_disconnect_unsubscribes(self, client, tenant, hub):
        """Test closing the socket removes its subscription."""
        with client.websocket_connect(f"/api/whatsapp/ws/{tenant.id}") as websocket:
            websocket.send_text("ping")

        assert hub.subscriber_count(tenant.id) == 0

    def test_binary_frames_ignored(self, client, tenant):
        """Test a binary client frame neither closes the feed nor stops delivery."""
        with client.websocket_connect(f"/api/whatsapp/ws/{tenant.id}") as websocket:
            websocket.send_bytes(b"\x00\x01")
            response = post_inbound(client, tenant, "wamid.after-binary", "still here")
            assert response.status_code == 200

            event = websocket.receive_json()

        assert event["data"]["waMessageId"] == "wamid.after-binary"
        assert event["data"]["message"] == "still here"
