import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheUpdateChannel(Generic[T]):
    """
    Multicast channel that remembers its last value.

    New subscribers are called immediately with the current value and then
    with every later emit(). Emitters must commit their write before calling
    emit() so a listener that reads back always sees it.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._listeners: List[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener and return a callable that unsubscribes it."""
        self._listeners.append(listener)
        self._deliver(listener, self._value)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, value: T) -> None:
        self._value = value
        for listener in list(self._listeners):
            self._deliver(listener, value)

    def _deliver(self, listener: Callable[[T], None], value: T) -> None:
        try:
            listener(value)
        except Exception as e:
            # One broken listener must not starve the rest
            logger.error(f"Cache update listener {listener!r} failed: {e}")
