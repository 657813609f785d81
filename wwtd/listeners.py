# wwtd/listeners.py

import logging
import threading
from typing import Any, Callable, Dict, List
from uuid import uuid4

logger = logging.getLogger("wwtd_core")

Callback = Callable[[Any], None]


class ListenerHandle:
    """
    Returned by every live subscription. cancel() is idempotent.
    """

    def __init__(self, hub: "ListenerHub", key: str, token: str):
        self._hub = hub
        self.key = key
        self._token = token
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._hub._remove(self.key, self._token)


class ListenerHub:
    """
    Process-local registry of push listeners, keyed by document path
    (user id for user documents and thread lists).

    - publish() delivers a snapshot to every live listener of a key.
    - a failing callback is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        # key -> {token: callback}
        self._items: Dict[str, Dict[str, Callback]] = {}

    def add(self, key: str, callback: Callback) -> ListenerHandle:
        token = str(uuid4())
        with self._lock:
            self._items.setdefault(str(key), {})[token] = callback
        return ListenerHandle(self, str(key), token)

    def _remove(self, key: str, token: str) -> None:
        with self._lock:
            bucket = self._items.get(key)
            if not bucket:
                return
            bucket.pop(token, None)
            if not bucket:
                del self._items[key]

    def has_listeners(self, key: str) -> bool:
        with self._lock:
            return bool(self._items.get(str(key)))

    def listener_count(self, key: str) -> int:
        with self._lock:
            return len(self._items.get(str(key), {}))

    def publish(self, key: str, snapshot: Any) -> int:
        with self._lock:
            callbacks: List[Callback] = list(self._items.get(str(key), {}).values())

        delivered = 0
        for cb in callbacks:
            try:
                cb(snapshot)
                delivered += 1
            except Exception:
                logger.exception("[%s] listener callback failed for key=%s", self.name, key)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
