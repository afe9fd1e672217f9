"""Listener Hub — best-effort fan-out of status and log events."""

import asyncio
import logging
from typing import Callable, List, Union

logger = logging.getLogger(__name__)

Listener = Union[asyncio.Queue, Callable[[dict], None]]


class ListenerHub:
    """
    Broadcasts events to any number of passive listeners.
    Never blocks and never fails because a listener is slow or absent.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self) -> asyncio.Queue:
        """Register a bounded queue listener and return it."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._listeners.append(queue)
        return queue

    def add(self, callback: Callable[[dict], None]) -> None:
        self._listeners.append(callback)

    def remove(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def broadcast(self, event: dict) -> None:
        for listener in list(self._listeners):
            if isinstance(listener, asyncio.Queue):
                try:
                    listener.put_nowait(event)
                except asyncio.QueueFull:
                    logger.debug("Listener queue full, dropping %s", event.get("type"))
            else:
                try:
                    listener(event)
                except Exception:
                    logger.exception("Listener raised while handling %s", event.get("type"))
