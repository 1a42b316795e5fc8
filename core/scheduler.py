import asyncio
import logging
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

class KeyedScheduler:
    """
    Delayed callbacks keyed by an identifier, on the running event loop.

    Scheduling a key that already has a pending callback replaces it, and
    cancelling an unknown key is a no-op, so both operations are idempotent.
    """

    def __init__(self, name: str = "scheduler"):
        self.name = name
        self._handles: Dict[Hashable, asyncio.TimerHandle] = {}

    def schedule(self, key: Hashable, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(delay, self._fire, key, callback, args)

    def cancel(self, key: Hashable) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self):
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self, key: Hashable) -> bool:
        return key in self._handles

    def when(self, key: Hashable) -> Optional[float]:
        """Loop time at which the callback for ``key`` fires, if scheduled."""
        handle = self._handles.get(key)
        return handle.when() if handle else None

    def __len__(self) -> int:
        return len(self._handles)

    def _fire(self, key: Hashable, callback: Callable[..., Any], args: tuple):
        self._handles.pop(key, None)
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"[{self.name}] Callback for {key} failed: {e}")
