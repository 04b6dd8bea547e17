"""
Change notification bus and the push-stream bridge for remote consumers.

The bus is a plain observer list: delivery is best effort and a subscriber
that raises is logged and skipped. StateStream fans bus events out to any
number of connected stream consumers as server-sent-event frames. It has no
retry logic; a consumer that falls behind is dropped and must reconnect.
"""

import json
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

STATE_CHANGED = 'state_changed'

DEFAULT_KEEPALIVE_INTERVAL = 30.0
DEFAULT_MAX_QUEUE = 100

_CLOSED = object()


def format_event(message: Dict[str, Any]) -> str:
    """Encode a message as one server-sent-event frame."""
    return f"data: {json.dumps(message, ensure_ascii=False)}\n\n"


PING_FRAME = format_event({'type': 'ping'})


class ChangeBus:
    """In-process publish/subscribe channel."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Any], None], event: str = STATE_CHANGED) -> Callable[[], bool]:
        """Register callback for event. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.setdefault(event, []).append(callback)
        return lambda: self.unsubscribe(callback, event)

    def unsubscribe(self, callback: Callable[[Any], None], event: str = STATE_CHANGED) -> bool:
        with self._lock:
            subscribers = self._subscribers.get(event, [])
            if callback in subscribers:
                subscribers.remove(callback)
                return True
        return False

    def subscriber_count(self, event: str = STATE_CHANGED) -> int:
        with self._lock:
            return len(self._subscribers.get(event, []))

    def publish(self, payload: Any, event: str = STATE_CHANGED) -> int:
        """Deliver payload to every subscriber. Returns the number of successful deliveries."""
        with self._lock:
            subscribers = list(self._subscribers.get(event, []))

        delivered = 0
        for callback in subscribers:
            try:
                callback(payload)
                delivered += 1
            except Exception:
                logger.exception(f"Subscriber {callback!r} failed to handle {event}")
        return delivered


class StreamClient:
    """One connected push-stream consumer with its own bounded frame queue."""

    def __init__(self, stream: 'StateStream', max_queue: int):
        self._stream = stream
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self.connected = True

    def send(self, frame: str) -> bool:
        if not self.connected:
            return False
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            return False
        return True

    def next_frame(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next queued frame, or None if nothing arrived within timeout or the client closed."""
        try:
            frame = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if frame is _CLOSED:
            self.connected = False
            return None
        return frame

    def frames(self, keepalive_interval: Optional[float] = None,
               timeout: Optional[float] = None) -> Iterator[str]:
        """Yield frames until disconnected, emitting a ping whenever the stream is idle.

        With a timeout the generator also ends once that many seconds have passed.
        """
        interval = self._stream.keepalive_interval if keepalive_interval is None else keepalive_interval
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.connected:
            wait = interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                wait = min(interval, remaining)
            frame = self.next_frame(timeout=wait)
            if frame is None and deadline is not None and time.monotonic() >= deadline:
                return
            if frame is not None:
                yield frame
            elif self.connected:
                yield PING_FRAME

    def close(self) -> None:
        self._stream.disconnect(self)

    def _shutdown(self) -> None:
        self.connected = False
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass


class StateStream:
    """Bridges a ChangeBus to push-stream consumers."""

    def __init__(self, bus: ChangeBus,
                 keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
                 max_queue: int = DEFAULT_MAX_QUEUE):
        self.keepalive_interval = keepalive_interval
        self.max_queue = max_queue
        self._clients: List[StreamClient] = []
        self._lock = threading.Lock()
        self._unsubscribe = bus.subscribe(self.broadcast, STATE_CHANGED)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def connect(self, initial_state: Optional[Dict[str, Any]] = None) -> StreamClient:
        """Register a consumer. It receives a ping and, if given, the current state."""
        client = StreamClient(self, self.max_queue)
        client.send(PING_FRAME)
        if initial_state is not None:
            client.send(format_event({'type': 'state', 'payload': initial_state}))
        with self._lock:
            self._clients.append(client)
        logger.debug(f"Stream consumer connected ({self.client_count} total)")
        return client

    def disconnect(self, client: StreamClient) -> None:
        with self._lock:
            if client in self._clients:
                self._clients.remove(client)
        client._shutdown()

    def broadcast(self, state: Dict[str, Any]) -> None:
        frame = format_event({'type': 'state', 'payload': state})
        with self._lock:
            clients = list(self._clients)

        for client in clients:
            if not client.send(frame):
                logger.warning("Dropping stream consumer that stopped reading")
                self.disconnect(client)

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            self.disconnect(client)
