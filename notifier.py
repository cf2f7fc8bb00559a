"""Change notifier: broadcast committed row changes to live subscribers.

Every successful write to a token state or session row is published as the
full new row on a channel keyed by table and filter, e.g.
``token_state:session_id=7``.  Delivery is best effort: a subscriber whose
connection drops misses whatever was published in the meantime and must
re-read the row once it is back (``on_reconnect``).

Two backends share one interface:

* ``RedisNotifier`` uses Redis pub/sub and is selected when ``REDIS_URL`` is
  set, so several worker processes see each other's writes.
* ``LocalNotifier`` fans out inside the current process only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import redis
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from errors import SubscriptionError

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
RECONNECT_DELAY_SECONDS = float(os.getenv("NOTIFIER_RECONNECT_DELAY", "1.0"))

TOKEN_STATE_TABLE = "token_state"
SESSIONS_TABLE = "clinic_sessions"

Callback = Callable[[Dict[str, Any]], None]


def channel_for(table: str, column: str, value: Any) -> str:
    return f"{table}:{column}={value}"


def token_state_channel(session_id: int) -> str:
    return channel_for(TOKEN_STATE_TABLE, "session_id", session_id)


def session_channel(clinic_id: int) -> str:
    return channel_for(SESSIONS_TABLE, "clinic_id", clinic_id)


def change_event(
    table: str,
    event: str,
    new: Optional[Dict[str, Any]] = None,
    old: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the payload sent for one row change."""
    return {
        "table": table,
        "event": event,
        "new": new,
        "old": old,
        "committed_at": datetime.now(timezone.utc).isoformat(),
    }


class Subscription:
    """Handle for one registered callback.

    ``close`` is synchronous; once it returns the callback is never invoked
    again, even for payloads that were already queued for delivery.
    """

    def __init__(self, channel: str, callback: Callback, on_reconnect: Optional[Callable[[], None]] = None):
        self.channel = channel
        self.callback = callback
        self.on_reconnect = on_reconnect
        self.closed = False

    def deliver(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self.callback(payload)
        except Exception:
            logger.exception(f"Subscriber callback failed on {self.channel}")

    def reconnected(self) -> None:
        if self.closed or self.on_reconnect is None:
            return
        logger.info(f"Re-subscribed to {self.channel}")
        self.on_reconnect()

    def close(self) -> None:
        self.closed = True


class LocalSubscription(Subscription):
    def __init__(self, notifier: "LocalNotifier", channel: str, callback: Callback,
                 on_reconnect: Optional[Callable[[], None]], loop: asyncio.AbstractEventLoop):
        super().__init__(channel, callback, on_reconnect)
        self._notifier = notifier
        self._loop = loop

    def schedule(self, payload: Dict[str, Any]) -> bool:
        """Queue ``payload`` on the subscriber's event loop (thread-safe)."""
        try:
            self._loop.call_soon_threadsafe(self.deliver, payload)
        except RuntimeError:
            # Loop already closed: the subscriber is gone, drop the event.
            logger.debug(f"Dropped event for closed loop on {self.channel}")
            return False
        return True

    def close(self) -> None:
        super().close()
        self._notifier.discard(self)


class LocalNotifier:
    """In-process fan-out, used when no Redis is configured."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[LocalSubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(channel, ()))
        return sum(1 for sub in targets if sub.schedule(payload))

    async def subscribe(self, channel: str, callback: Callback,
                        on_reconnect: Optional[Callable[[], None]] = None) -> Subscription:
        sub = LocalSubscription(self, channel, callback, on_reconnect, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.setdefault(channel, []).append(sub)
        return sub

    def discard(self, sub: LocalSubscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.channel)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscriptions[sub.channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel, ()))

    def status(self) -> str:
        return "local"


class RedisSubscription(Subscription):
    task: Optional[asyncio.Task] = None

    def close(self) -> None:
        super().close()
        if self.task is not None:
            self.task.cancel()


class RedisNotifier:
    """Redis pub/sub backend.

    Publishing uses the blocking client because mutations run in worker
    threads; subscriptions use ``redis.asyncio`` and live on the caller's
    event loop.
    """

    def __init__(self, url: Optional[str] = None, reconnect_delay: float = RECONNECT_DELAY_SECONDS,
                 client: Optional[redis.Redis] = None, async_client: Optional[aioredis.Redis] = None):
        self.url = url or REDIS_URL
        self.reconnect_delay = reconnect_delay
        self._client = client
        self._async_client = async_client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    @property
    def async_client(self) -> aioredis.Redis:
        if self._async_client is None:
            self._async_client = aioredis.from_url(self.url, decode_responses=True)
        return self._async_client

    def publish(self, channel: str, payload: Dict[str, Any]) -> int:
        try:
            return self.client.publish(channel, json.dumps(payload))
        except RedisError as e:
            logger.warning(f"Redis publish error on {channel}: {e}")
            return 0

    async def subscribe(self, channel: str, callback: Callback,
                        on_reconnect: Optional[Callable[[], None]] = None) -> Subscription:
        pubsub = self.async_client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            await pubsub.aclose()
            raise SubscriptionError(f"Could not subscribe to {channel}: {e}") from e
        sub = RedisSubscription(channel, callback, on_reconnect)
        sub.task = asyncio.create_task(self._listen(sub, pubsub))
        return sub

    async def _listen(self, sub: RedisSubscription, pubsub: Any) -> None:
        try:
            while not sub.closed:
                try:
                    async for message in pubsub.listen():
                        if message.get("type") == "message":
                            sub.deliver(json.loads(message["data"]))
                    # listen() only ends once the channel is unsubscribed.
                    return
                except (RedisConnectionError, RedisTimeoutError) as e:
                    logger.warning(f"Subscription to {sub.channel} dropped: {e}")
                await pubsub.aclose()
                pubsub = await self._resubscribe(sub)
                sub.reconnected()
        finally:
            await pubsub.aclose()

    async def _resubscribe(self, sub: RedisSubscription) -> Any:
        while True:
            await asyncio.sleep(self.reconnect_delay)
            pubsub = self.async_client.pubsub()
            try:
                await pubsub.subscribe(sub.channel)
                return pubsub
            except RedisError as e:
                logger.warning(f"Re-subscribe to {sub.channel} failed, retrying: {e}")
                await pubsub.aclose()

    def status(self) -> str:
        try:
            self.client.ping()
            return "connected"
        except RedisError:
            return "unavailable"


_notifier = None


def get_notifier():
    """Return the process-wide notifier, creating it on first use."""
    global _notifier
    if _notifier is None:
        if REDIS_URL:
            logger.info("Change notifier: Redis pub/sub")
            _notifier = RedisNotifier(REDIS_URL)
        else:
            logger.info("Change notifier: in-process (REDIS_URL not set)")
            _notifier = LocalNotifier()
    return _notifier


def set_notifier(notifier) -> None:
    global _notifier
    _notifier = notifier
