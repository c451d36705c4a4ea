"""Job channel transports.

``RedisChannel`` is the production transport: PUBLISH/SUBSCRIBE on one named
channel, at-most-once, no acknowledgement and no persistence. A message
published while no worker is subscribed is lost. ``RedisQueueChannel`` is the
durable variant behind the same interface (RPUSH/BLPOP on a list), and
``InMemoryChannel`` serves tests and single-process runs.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from pricing_engine.settings import WorkerSettings

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "jobsChannel"
DEFAULT_RECONNECT_DELAY_S = 5.0
LISTEN_POLL_S = 1.0

MessageCallback = Callable[[str], Any]


class InMemoryChannel:
    """Process-local broadcast channel with the same delivery contract as Redis pub/sub."""

    def __init__(self, name: str = DEFAULT_CHANNEL) -> None:
        self.name = name
        self._lock = threading.RLock()
        self._subscribers: list[MessageCallback] = []

    def publish(self, message: str) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(message)
        return len(subscribers)

    def subscribe(self, callback: MessageCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: MessageCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def listen(self, on_message: MessageCallback, *, stop_event: threading.Event) -> None:
        self.subscribe(on_message)
        try:
            stop_event.wait()
        finally:
            self.unsubscribe(on_message)

    def reset(self) -> None:
        with self._lock:
            self._subscribers.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for JOB_CHANNEL_BACKEND=redis; install redis>=5") from exc
    return redis


def _decode(data: Any) -> str | None:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        return data
    return None


class RedisChannel:
    """Redis pub/sub channel; reconnects after a fixed delay on transport errors."""

    def __init__(
        self,
        *,
        url: str,
        name: str = DEFAULT_CHANNEL,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
    ) -> None:
        if not url.strip():
            raise ValueError("REDIS_URL must be provided for redis channel backend")
        self.name = name
        self.reconnect_delay_s = max(0.0, float(reconnect_delay_s))
        redis = _import_redis()
        self._errors = (redis.RedisError, OSError)
        self._client = redis.Redis.from_url(url.strip(), decode_responses=True)

    def publish(self, message: str) -> int:
        receivers = int(self._client.publish(self.name, message) or 0)
        if receivers == 0:
            logger.warning("channel_publish_no_subscribers channel=%s", self.name)
        return receivers

    def listen(self, on_message: MessageCallback, *, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            try:
                pubsub.subscribe(self.name)
                logger.info("channel_subscribed channel=%s", self.name)
                while not stop_event.is_set():
                    message = pubsub.get_message(timeout=LISTEN_POLL_S)
                    if not message or message.get("type") != "message":
                        continue
                    text = _decode(message.get("data"))
                    if text is not None:
                        on_message(text)
            except self._errors as exc:
                logger.warning(
                    "channel_listen_failed channel=%s error=%s retry_in=%.1fs",
                    self.name,
                    exc,
                    self.reconnect_delay_s,
                )
                stop_event.wait(self.reconnect_delay_s)
            finally:
                try:
                    pubsub.close()
                except self._errors:
                    logger.debug("channel_close_failed channel=%s", self.name)
        logger.info("channel_unsubscribed channel=%s", self.name)


class RedisQueueChannel:
    """Durable list-backed variant: messages wait in Redis until a worker pops them."""

    def __init__(
        self,
        *,
        url: str,
        name: str = DEFAULT_CHANNEL,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
    ) -> None:
        if not url.strip():
            raise ValueError("REDIS_URL must be provided for redis_queue channel backend")
        self.name = name
        self.reconnect_delay_s = max(0.0, float(reconnect_delay_s))
        redis = _import_redis()
        self._errors = (redis.RedisError, OSError)
        self._client = redis.Redis.from_url(url.strip(), decode_responses=True)

    @property
    def queue_key(self) -> str:
        return f"{self.name}:queue"

    def publish(self, message: str) -> int:
        self._client.rpush(self.queue_key, message)
        return 1

    def pending_count(self) -> int:
        return int(self._client.llen(self.queue_key))

    def listen(self, on_message: MessageCallback, *, stop_event: threading.Event) -> None:
        try:
            logger.info("channel_listening queue=%s pending=%s", self.queue_key, self.pending_count())
        except self._errors as exc:
            logger.warning("channel_pending_count_failed queue=%s error=%s", self.queue_key, exc)
        while not stop_event.is_set():
            try:
                item = self._client.blpop([self.queue_key], timeout=int(LISTEN_POLL_S))
            except self._errors as exc:
                logger.warning(
                    "channel_listen_failed queue=%s error=%s retry_in=%.1fs",
                    self.queue_key,
                    exc,
                    self.reconnect_delay_s,
                )
                stop_event.wait(self.reconnect_delay_s)
                continue
            if not item:
                continue
            text = _decode(item[1])
            if text is not None:
                on_message(text)


JobChannel = InMemoryChannel | RedisChannel | RedisQueueChannel


def create_channel(settings: WorkerSettings) -> JobChannel:
    backend = settings.channel_backend
    if backend == "memory":
        return InMemoryChannel(settings.channel_name)
    if backend == "redis":
        return RedisChannel(
            url=settings.redis_url,
            name=settings.channel_name,
            reconnect_delay_s=settings.reconnect_delay_s,
        )
    if backend == "redis_queue":
        return RedisQueueChannel(
            url=settings.redis_url,
            name=settings.channel_name,
            reconnect_delay_s=settings.reconnect_delay_s,
        )
    raise RuntimeError(f"unsupported channel backend: {backend}")


def create_channel_from_env(environ: Mapping[str, str] | None = None) -> JobChannel:
    return create_channel(WorkerSettings.from_env(environ))
