from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import redis


logger = logging.getLogger(__name__)

EventPublisher = Callable[[str, Dict[str, Any]], None]

# After a failed connect, publishes are dropped for this long instead of reconnecting each time.
RECONNECT_INTERVAL = 30.0


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None
        self._retry_at = 0.0
        self._connect()

    def _connect(self) -> None:
        if time.monotonic() < self._retry_at:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5, socket_connect_timeout=0.5)
            self._client.ping()
        except redis.RedisError as exc:
            logger.debug("event_publisher_unavailable", extra={"err": str(exc)})
            self._client = None
            self._retry_at = time.monotonic() + RECONNECT_INTERVAL

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload, ensure_ascii=False, default=str))
        except redis.RedisError as exc:
            logger.debug("event_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None
            self._retry_at = time.monotonic() + RECONNECT_INTERVAL


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Best-effort pub/sub notification on ``promptsmith.events.<type>``."""
    publisher = _get_publisher()
    if not publisher:
        return
    publisher.publish(f"promptsmith.events.{event_type}", payload)


def reset_publisher() -> None:
    global _publisher
    _publisher = None
