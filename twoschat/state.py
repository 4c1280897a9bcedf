import logging
import threading

logger = logging.getLogger("TwosChat")


class StateCell:
    """Observable value; subscribers are called with every new value."""

    def __init__(self, initial=None, name=""):
        self._value = initial
        self._name = name
        self._subscribers = []
        self._lock = threading.Lock()

    def get(self):
        return self._value

    def set(self, value):
        self._value = value
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                logger.exception("State subscriber failed (cell=%s)", self._name or "?")

    def subscribe(self, callback):
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def __repr__(self):
        return f"StateCell({self._name or 'unnamed'}={self._value!r})"
