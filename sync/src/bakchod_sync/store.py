from __future__ import annotations

import contextlib
import copy
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import DocumentNotFound, PreconditionFailed
from .hub import Listener, ListenerHub


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")
_MISSING = _Sentinel("MISSING")


class Increment:
    def __init__(self, amount: int = 1) -> None:
        self.amount = amount


class ArrayUnion:
    def __init__(self, *values: Any) -> None:
        self.values = values


class ArrayRemove:
    def __init__(self, *values: Any) -> None:
        self.values = values


def collection_path(*parts: str) -> str:
    """Join path segments, e.g. ``collection_path("chats", chat_id, "messages")``."""

    return "/".join(parts)


@dataclass(frozen=True)
class Document:
    collection: str
    id: str
    data: Dict[str, Any]

    def get(self, path: str, default: Any = None) -> Any:
        value = get_path(self.data, path, _MISSING)
        return default if value is _MISSING else value


FILTER_OPS = ("==", "!=", "array-contains", "in")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op: {self.op}")

    def matches(self, data: Dict[str, Any]) -> bool:
        current = get_path(data, self.field, _MISSING)
        if current is _MISSING:
            return False
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        if self.op == "array-contains":
            return isinstance(current, list) and self.value in current
        return current in self.value


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class SetWrite:
    collection: str
    doc_id: str
    fields: Dict[str, Any]
    merge: bool = False


@dataclass(frozen=True)
class UpdateWrite:
    collection: str
    doc_id: str
    fields: Dict[str, Any]
    if_match: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class DeleteWrite:
    collection: str
    doc_id: str


Write = Union[SetWrite, UpdateWrite, DeleteWrite]
DocKey = Tuple[str, str]


def get_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def _resolve(value: Any, current: Any, ts: int) -> Any:
    if value is SERVER_TIMESTAMP:
        return ts
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        merged = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in merged:
                merged.append(item)
        return merged
    if isinstance(value, ArrayRemove):
        base = list(current) if isinstance(current, list) else []
        return [item for item in base if item not in value.values]
    if isinstance(value, dict):
        return {
            key: _resolve(item, None, ts)
            for key, item in value.items()
            if item is not DELETE_FIELD
        }
    if isinstance(value, (list, tuple)):
        return [_resolve(item, None, ts) for item in value]
    return copy.deepcopy(value)


def _merge_into(target: Dict[str, Any], fields: Dict[str, Any], ts: int) -> None:
    for key, value in fields.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_into(target[key], value, ts)
        else:
            target[key] = _resolve(value, target.get(key), ts)


def _update_path(target: Dict[str, Any], path: str, value: Any, ts: int) -> None:
    parts = path.split(".")
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            if value is DELETE_FIELD:
                return
            child = {}
            node[part] = child
        node = child
    leaf = parts[-1]
    if value is DELETE_FIELD:
        node.pop(leaf, None)
    else:
        node[leaf] = _resolve(value, node.get(leaf), ts)


def _sort_key(value: Any) -> Tuple[int, Any]:
    return (0, 0) if value is None else (1, value)


class DocumentStore:
    """Document store with atomic batches, field transforms and live listeners.

    Subclasses provide the storage primitives (``_read``, ``_read_collection``,
    ``_persist``); query evaluation, transforms, server timestamps and listener
    fan-out live here so every backend behaves the same way.
    """

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._last_ts = 0
        self._hub = ListenerHub()

    # -- storage primitives -------------------------------------------------

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _read_collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError

    def _persist(self, staged: Dict[DocKey, Optional[Dict[str, Any]]], ts: int) -> None:
        raise NotImplementedError

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        yield

    # -- clock ---------------------------------------------------------------

    def _server_now(self) -> int:
        ts = max(self._now(), self._last_ts + 1)
        self._last_ts = ts
        return ts

    @property
    def last_server_timestamp(self) -> int:
        return self._last_ts

    # -- reads ---------------------------------------------------------------

    def new_id(self) -> str:
        return secrets.token_hex(10)

    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        data = self._read(collection, doc_id)
        if data is None:
            return None
        return Document(collection=collection, id=doc_id, data=copy.deepcopy(data))

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        return self._run_query(collection, tuple(filters), order_by, limit)

    def _run_query(
        self,
        collection: str,
        filters: Tuple[Filter, ...],
        order_by: Optional[OrderBy],
        limit: Optional[int],
    ) -> List[Document]:
        docs = [
            Document(collection=collection, id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._read_collection(collection).items()
            if all(f.matches(data) for f in filters)
        ]
        if order_by is None:
            docs.sort(key=lambda d: d.id)
        else:
            docs = [d for d in docs if get_path(d.data, order_by.field, _MISSING) is not _MISSING]
            docs.sort(
                key=lambda d: (_sort_key(get_path(d.data, order_by.field)), d.id),
                reverse=order_by.descending,
            )
        if limit is not None:
            docs = docs[: max(limit, 0)]
        return docs

    # -- writes --------------------------------------------------------------

    async def set_document(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False) -> None:
        await self.run_batch([SetWrite(collection, doc_id, fields, merge=merge)])

    async def update_fields(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        *,
        if_match: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.run_batch([UpdateWrite(collection, doc_id, fields, if_match=if_match)])

    async def add_document(self, collection: str, fields: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self.run_batch([SetWrite(collection, doc_id, fields)])
        return doc_id

    async def delete_document(self, collection: str, doc_id: str) -> None:
        await self.run_batch([DeleteWrite(collection, doc_id)])

    async def run_batch(self, writes: Iterable[Write]) -> int:
        """Apply every write or none of them; returns the batch's server timestamp."""

        writes = list(writes)
        if not writes:
            return self._last_ts
        with self._transaction():
            ts = self._server_now()
            staged = self._stage(writes, ts)
            self._persist(staged, ts)
        self._fan_out(staged)
        return ts

    def _stage(self, writes: List[Write], ts: int) -> Dict[DocKey, Optional[Dict[str, Any]]]:
        staged: Dict[DocKey, Optional[Dict[str, Any]]] = {}

        def current(key: DocKey) -> Optional[Dict[str, Any]]:
            if key in staged:
                return staged[key]
            return self._read(*key)

        for write in writes:
            key = (write.collection, write.doc_id)
            existing = current(key)
            if isinstance(write, DeleteWrite):
                staged[key] = None
            elif isinstance(write, SetWrite):
                if write.merge:
                    merged = copy.deepcopy(existing) if existing is not None else {}
                    _merge_into(merged, write.fields, ts)
                    staged[key] = merged
                else:
                    staged[key] = _resolve(write.fields, None, ts)
            else:
                if existing is None:
                    raise DocumentNotFound(write.collection, write.doc_id)
                for path, expected in (write.if_match or {}).items():
                    if get_path(existing, path, _MISSING) != expected:
                        raise PreconditionFailed(write.collection, write.doc_id, path)
                updated = copy.deepcopy(existing)
                for path, value in write.fields.items():
                    _update_path(updated, path, value, ts)
                staged[key] = updated
        return staged

    # -- listeners -----------------------------------------------------------

    def subscribe(
        self,
        collection: str,
        callback: Callable[[List[Document]], None],
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> Callable[[], None]:
        """Watch a query; the current result is delivered before this returns."""

        listener = Listener(
            collection=collection,
            callback=callback,
            filters=tuple(filters),
            order_by=order_by,
            limit=limit,
        )
        unsubscribe = self._hub.add(listener)
        self._refresh(listener)
        return unsubscribe

    def subscribe_document(
        self,
        collection: str,
        doc_id: str,
        callback: Callable[[Optional[Document]], None],
    ) -> Callable[[], None]:
        listener = Listener(collection=collection, callback=callback, doc_id=doc_id)
        unsubscribe = self._hub.add(listener)
        self._refresh(listener)
        return unsubscribe

    def listener_count(self, collection: str | None = None) -> int:
        return self._hub.count(collection)

    def _refresh(self, listener: Listener) -> None:
        if listener.doc_id is not None:
            data = self._read(listener.collection, listener.doc_id)
            doc = None
            if data is not None:
                doc = Document(collection=listener.collection, id=listener.doc_id, data=copy.deepcopy(data))
            key = None if doc is None else (doc.id, doc.data)
            listener.deliver(key, doc)
            return
        docs = self._run_query(listener.collection, listener.filters, listener.order_by, listener.limit)
        key = [(d.id, d.data) for d in docs]
        listener.deliver(key, docs)

    def _fan_out(self, staged: Dict[DocKey, Optional[Dict[str, Any]]]) -> None:
        touched: Dict[str, set] = {}
        for collection, doc_id in staged:
            touched.setdefault(collection, set()).add(doc_id)
        for listener in self._hub.affected(touched):
            if not listener.active:
                continue
            try:
                self._refresh(listener)
            except Exception:
                logger.exception("listener on %s failed", listener.collection)


class InMemoryStore(DocumentStore):
    """Process-local store; every batch runs without suspension so it is atomic."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(now_func=now_func)
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._collections.get(collection, {}).get(doc_id)

    def _read_collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._collections.get(collection, {}))

    def _persist(self, staged: Dict[DocKey, Optional[Dict[str, Any]]], ts: int) -> None:
        for (collection, doc_id), data in staged.items():
            docs = self._collections.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = data
            if not docs:
                self._collections.pop(collection, None)

    def document_count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))
