"""Application state shared by the HTTP, GraphQL and WebSocket handlers."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Generic, List, Optional, TypeVar

from .config import Config
from .models import IndexedTx, Subscription

__all__ = ["Broadcast", "AppState"]

T = TypeVar("T")

CHANNEL_CAPACITY = 100


class Broadcast(Generic[T]):
    """Fan-out channel: every subscriber receives every item sent after it joined.

    Each subscriber holds at most ``capacity`` items; when it falls behind,
    the oldest items are dropped.
    """

    def __init__(self, capacity: int = CHANNEL_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("broadcast capacity must be positive")
        self.capacity = capacity
        self._receivers: List[Deque[T]] = []
        self._lock = threading.Lock()

    @property
    def receiver_count(self) -> int:
        return len(self._receivers)

    def subscribe(self) -> Deque[T]:
        """A new queue that receives items sent from now on."""
        queue: Deque[T] = deque(maxlen=self.capacity)
        with self._lock:
            self._receivers.append(queue)
        return queue

    def unsubscribe(self, queue: Deque[T]) -> None:
        """Stop delivering to ``queue``; unknown queues are ignored."""
        with self._lock:
            self._receivers = [q for q in self._receivers if q is not queue]

    def send(self, item: T) -> int:
        """Deliver ``item`` to every subscriber; return how many received it."""
        with self._lock:
            receivers = list(self._receivers)
        for queue in receivers:
            queue.append(item)
        return len(receivers)


@dataclass
class AppState:
    """Database engine, active subscriptions and the transaction channel."""

    engine: Any
    config: Optional[Config] = None
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    tx_channel: Broadcast[IndexedTx] = field(default_factory=Broadcast)

    @classmethod
    def create(cls, engine: Any, config: Optional[Config] = None) -> "AppState":
        """State with no subscriptions and a channel of capacity 100."""
        return cls(engine=engine, config=config)