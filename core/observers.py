"""
Copy-on-write observer lists.

Subscribing or unsubscribing swaps the backing tuple under a lock, so a
notification iterates a stable snapshot without holding any lock and an
observer may unsubscribe itself while being notified.

An observer that raises is logged and skipped; the remaining observers are
still called.
"""

import threading
from typing import Generic, Tuple, TypeVar

from core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class ObserverList(Generic[T]):
    """
    Ordered set of observers.

    Example:
        >>> funding_observers: ObserverList[Callable[[FundingRate], None]] = ObserverList()
        >>> funding_observers.subscribe(on_funding)
        >>> funding_observers.notify(rate)
    """

    def __init__(self, name: str = ""):
        self._name = name
        self._observers: Tuple[T, ...] = ()
        self._lock = threading.Lock()

    def subscribe(self, observer: T) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers = self._observers + (observer,)

    def unsubscribe(self, observer: T) -> None:
        with self._lock:
            self._observers = tuple(o for o in self._observers if o != observer)

    def snapshot(self) -> Tuple[T, ...]:
        return self._observers

    def notify(self, *args) -> None:
        """Call every observer (observers must be callables)"""
        for observer in self._observers:
            try:
                observer(*args)
            except Exception as e:
                logger.exception(f"Observer {observer!r} of {self._name or 'list'} failed: {e}")

    def __len__(self) -> int:
        return len(self._observers)

    def __bool__(self) -> bool:
        return bool(self._observers)

    def __iter__(self):
        return iter(self._observers)
