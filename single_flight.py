import threading
from collections.abc import Hashable
from contextlib import contextmanager
from typing import Iterator


class SingleFlight:
    """Process-local, non-blocking gate keyed by invocation context.

    ``hold(key)`` yields True to the first caller and False to anyone who
    arrives while that caller is still inside the block. It never waits and
    never raises for contention. Other processes do not see it, so it only
    reduces duplicate work; the unique materialization key is what keeps the
    data correct.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._active: set[Hashable] = set()

    def _try_enter(self, key: Hashable) -> bool:
        with self._guard:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def _leave(self, key: Hashable) -> None:
        with self._guard:
            self._active.discard(key)

    def in_flight(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._active

    def active_count(self) -> int:
        with self._guard:
            return len(self._active)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[bool]:
        acquired = self._try_enter(key)
        try:
            yield acquired
        finally:
            if acquired:
                self._leave(key)


materialization_guard = SingleFlight()
