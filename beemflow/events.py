"""In-process publish/subscribe event bus."""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]

_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_STOP = object()


class EventBusError(Exception):
    """Raised when an event bus cannot be created or used."""


@dataclass
class EventConfig:
    """Which event bus driver to use and where it lives."""

    driver: str = ""
    url: str = ""


def encode_payload(payload: Any) -> bytes:
    """Turn a payload into the bytes carried by a message."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, Mapping):
        try:
            text = json.dumps(
                dict(payload), separators=(",", ":"), ensure_ascii=False, allow_nan=False
            )
        except (TypeError, ValueError) as exc:
            raise EventBusError(f"failed to marshal map payload: {exc}") from exc
        return text.encode("utf-8")
    if payload is None:
        return b"<nil>"
    if isinstance(payload, bool):
        return b"true" if payload else b"false"
    return str(payload).encode("utf-8")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def decode_payload(data: bytes) -> Any:
    """Turn message bytes back into an int, a non-empty dict or a string."""
    text = data.decode("utf-8", errors="replace")
    if _INTEGER.fullmatch(text):
        value = int(text)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    try:
        decoded = json.loads(text, parse_int=float, parse_constant=_reject_constant)
    except ValueError:
        decoded = None
    if isinstance(decoded, dict) and decoded:
        return decoded
    return text


class Subscription:
    """A handler receiving the messages of one topic on its own thread."""

    def __init__(self, topic: str, handler: Handler, on_cancel: Callable[[Subscription], None]):
        self.topic = topic
        self._handler = handler
        self._on_cancel = on_cancel
        self._queue: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"event-subscriber:{topic}", daemon=True
        )

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def _start(self) -> None:
        self._thread.start()

    def _deliver(self, data: bytes) -> None:
        if not self._cancelled.is_set():
            self._queue.put(data)

    def _run(self) -> None:
        while True:
            data = self._queue.get()
            if data is _STOP or self._cancelled.is_set():
                return
            try:
                self._handler(decode_payload(data))
            except Exception:
                logger.exception("event handler for topic %s failed", self.topic)

    def cancel(self) -> None:
        """Stop receiving messages."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._queue.put(_STOP)
        self._on_cancel(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class InMemoryEventBus:
    """Delivers published messages to the current subscribers of a topic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._closed = False

    def publish(self, topic: str, payload: Any) -> None:
        data = encode_payload(payload)
        with self._lock:
            if self._closed:
                raise EventBusError("event bus is closed")
            subscribers = list(self._subscriptions.get(topic, ()))
        for subscription in subscribers:
            subscription._deliver(data)

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        with self._lock:
            if self._closed:
                raise EventBusError("event bus is closed")
            subscription = Subscription(topic, handler, self._discard)
            self._subscriptions.setdefault(topic, []).append(subscription)
        subscription._start()
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.topic)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
                if not subscribers:
                    del self._subscriptions[subscription.topic]

    def close(self) -> None:
        """Cancel every subscription and refuse further use."""
        with self._lock:
            self._closed = True
            subscribers = [s for subs in self._subscriptions.values() for s in subs]
            self._subscriptions.clear()
        for subscription in subscribers:
            subscription.cancel()

    def __enter__(self) -> InMemoryEventBus:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def event_bus_from_config(config: EventConfig | None) -> InMemoryEventBus:
    """Create the event bus a configuration asks for."""
    if config is None or config.driver in ("", "memory"):
        return InMemoryEventBus()
    if config.driver == "nats":
        if not config.url:
            raise EventBusError("NATS driver requires url")
        raise EventBusError(
            f"failed to create NATS event bus: no NATS streaming client available for {config.url}"
        )
    raise EventBusError(f"unsupported event bus driver: {config.driver}")