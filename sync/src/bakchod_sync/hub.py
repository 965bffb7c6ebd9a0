from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple


Callback = Callable[[Any], None]

_UNSET = object()


@dataclass(eq=False)
class Listener:
    """A live query or document watch registered with a store."""

    collection: str
    callback: Callback
    doc_id: Optional[str] = None
    filters: Tuple[Any, ...] = ()
    order_by: Any = None
    limit: Optional[int] = None
    active: bool = True
    last_key: Any = field(default=_UNSET, repr=False)

    def watches(self, collection: str, doc_ids: Iterable[str]) -> bool:
        if collection != self.collection:
            return False
        if self.doc_id is None:
            return True
        return self.doc_id in doc_ids

    def deliver(self, key: Any, payload: Any) -> bool:
        """Invoke the callback unless the result is unchanged since the last delivery."""

        if not self.active or key == self.last_key:
            return False
        self.last_key = key
        self.callback(payload)
        return True


class ListenerHub:
    """Registers listeners per collection and finds the ones a commit touched."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}

    def add(self, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(listener.collection, []).append(listener)

        def unsubscribe() -> None:
            self.remove(listener)

        return unsubscribe

    def remove(self, listener: Listener) -> None:
        listener.active = False
        listeners = self._listeners.get(listener.collection)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(listener.collection, None)

    def affected(self, touched: Dict[str, set]) -> List[Listener]:
        found: List[Listener] = []
        for collection, doc_ids in touched.items():
            for listener in list(self._listeners.get(collection, [])):
                if listener.watches(collection, doc_ids):
                    found.append(listener)
        return found

    def count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._listeners.get(collection, []))
        return sum(len(listeners) for listeners in self._listeners.values())
