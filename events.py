from __future__ import annotations

from typing import Any, Callable, Iterable

Listener = Callable[[Any], None]


class EventEmitter:
    """Registry of event kind -> ordered callbacks, fired synchronously.

    The set of event kinds is fixed at construction so a typo in a
    subscription fails loudly instead of never firing.
    """

    def __init__(self, kinds: Iterable[str]):
        self._listeners: dict[str, list[Listener]] = {k: [] for k in kinds}

    def on(self, kind: str, callback: Listener) -> Callable[[], None]:
        if kind not in self._listeners:
            raise KeyError(f"unknown event kind: {kind}")
        self._listeners[kind].append(callback)
        return lambda: self.off(kind, callback)

    def off(self, kind: str, callback: Listener) -> None:
        listeners = self._listeners.get(kind, [])
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, kind: str, data: Any = None) -> None:
        # copy: a callback may unsubscribe itself
        for callback in list(self._listeners[kind]):
            callback(data)

    def listener_count(self, kind: str) -> int:
        return len(self._listeners[kind])
