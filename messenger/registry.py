"""
Process-local map of authenticated users to their live real-time connections.

Nothing here is persisted: after a restart every user is offline until they
reconnect and authenticate again.
"""

import logging
import threading
from typing import Dict, FrozenSet, Hashable, Set

from messenger.metrics import realtime_connections

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks which connection handles belong to which user.

    Every mutation runs under one lock: connections authenticate and drop
    from independent contexts (the event loop and threadpool workers).
    A handle belongs to at most one user at a time.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: Dict[int, Set[Hashable]] = {}
        self._owners: Dict[Hashable, int] = {}

    def register(self, user_id: int, handle: Hashable) -> None:
        """Bind handle to user_id. Registering the same pair twice is a no-op."""
        with self._lock:
            previous = self._owners.get(handle)
            if previous is not None and previous != user_id:
                self._discard(previous, handle)
            self._handles.setdefault(user_id, set()).add(handle)
            self._owners[handle] = user_id
            self._update_gauge()
        logger.debug(f"Registered connection for user {user_id}")

    def unregister(self, user_id: int, handle: Hashable) -> None:
        with self._lock:
            if self._owners.get(handle) == user_id:
                del self._owners[handle]
            self._discard(user_id, handle)
            self._update_gauge()
        logger.debug(f"Unregistered connection for user {user_id}")

    def handles_for(self, user_id: int) -> FrozenSet[Hashable]:
        """Snapshot of the user's live handles, possibly empty."""
        with self._lock:
            return frozenset(self._handles.get(user_id, ()))

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._handles.get(user_id))

    def _discard(self, user_id: int, handle: Hashable) -> None:
        # caller holds the lock
        handles = self._handles.get(user_id)
        if handles is None:
            return
        handles.discard(handle)
        if not handles:
            del self._handles[user_id]

    def _update_gauge(self) -> None:
        realtime_connections.set(len(self._owners))
