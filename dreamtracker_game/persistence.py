from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
import asyncio
import copy
import logging
import os

from google.api_core.exceptions import AlreadyExists, GoogleAPIError
from google.cloud import firestore  # type: ignore

from .errors import ConcurrentUpdate, StoreReadError, StoreWriteError


logger = logging.getLogger(__name__)

Document = Dict[str, Any]
OnChange = Callable[[Optional[Document]], None]
Unsubscribe = Callable[[], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStore(Protocol):
    """What the session needs from a document database.

    ``subscribe`` delivers the current document right away and then every
    change, always on the event loop thread. ``None`` means the document does
    not exist (or was deleted).
    """

    server_timestamp: Any

    async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None: ...

    async def set_if_version(
        self, collection: str, doc_id: str, fields: Document, expected_version: Optional[int]
    ) -> None: ...

    async def create(self, collection: str, doc_id: str, fields: Document) -> bool: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...

    async def list_documents(self, collection: str) -> List[Document]: ...

    def subscribe(self, collection: str, doc_id: str, on_change: OnChange) -> Unsubscribe: ...


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def _resolve_sentinels(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: _resolve_sentinels(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_sentinels(v, now) for v in value]
    return value


def _deep_merge(base: Document, fields: Document) -> Document:
    merged = dict(base)
    for key, value in fields.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class InMemoryPersistence:
    """Process-local document store for tests and local dev.

    Writes fan out to subscribers synchronously, before ``set`` returns.
    ``fail_writes`` / ``fail_reads`` make the next operations raise the
    corresponding store error.
    """

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Document]] = {}
        self.watchers: Dict[Tuple[str, str], List[OnChange]] = {}
        self.write_log: List[Tuple[str, str]] = []
        self.fail_writes = False
        self.fail_reads = False
        self.server_timestamp = SERVER_TIMESTAMP

    def _collection(self, collection: str) -> Dict[str, Document]:
        return self.collections.setdefault(collection, {})

    def _check_write(self, collection: str, doc_id: str) -> None:
        if self.fail_writes:
            logger.warning(f"[dreamtracker] injected write failure path={collection}/{doc_id}")
            raise StoreWriteError(f"write failed for {collection}/{doc_id}")

    def _notify(self, collection: str, doc_id: str) -> None:
        doc = self._collection(collection).get(doc_id)
        for callback in list(self.watchers.get((collection, doc_id), [])):
            callback(copy.deepcopy(doc))

    def _store(self, collection: str, doc_id: str, doc: Document) -> None:
        self._collection(collection)[doc_id] = doc
        self.write_log.append((collection, doc_id))
        self._notify(collection, doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        if self.fail_reads:
            raise StoreReadError(f"read failed for {collection}/{doc_id}")
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc)

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        await asyncio.sleep(0)
        self._check_write(collection, doc_id)
        fields = _resolve_sentinels(copy.deepcopy(fields), _now())
        existing = self._collection(collection).get(doc_id)
        if merge and existing is not None:
            fields = _deep_merge(existing, fields)
        self._store(collection, doc_id, fields)

    async def set_if_version(
        self, collection: str, doc_id: str, fields: Document, expected_version: Optional[int]
    ) -> None:
        await asyncio.sleep(0)
        self._check_write(collection, doc_id)
        existing = self._collection(collection).get(doc_id)
        current = existing.get("version") if existing is not None else None
        if current != expected_version:
            raise ConcurrentUpdate(f"expected version {expected_version}, found {current}")
        self._store(collection, doc_id, _resolve_sentinels(copy.deepcopy(fields), _now()))

    async def create(self, collection: str, doc_id: str, fields: Document) -> bool:
        await asyncio.sleep(0)
        self._check_write(collection, doc_id)
        if doc_id in self._collection(collection):
            return False
        self._store(collection, doc_id, _resolve_sentinels(copy.deepcopy(fields), _now()))
        return True

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.sleep(0)
        self._check_write(collection, doc_id)
        self._collection(collection).pop(doc_id, None)
        self.write_log.append((collection, doc_id))
        self._notify(collection, doc_id)

    async def list_documents(self, collection: str) -> List[Document]:
        await asyncio.sleep(0)
        if self.fail_reads:
            raise StoreReadError(f"read failed for {collection}")
        return [copy.deepcopy(doc) for doc in self._collection(collection).values()]

    def subscribe(self, collection: str, doc_id: str, on_change: OnChange) -> Unsubscribe:
        key = (collection, doc_id)
        self.watchers.setdefault(key, []).append(on_change)
        on_change(copy.deepcopy(self._collection(collection).get(doc_id)))

        def _unsubscribe() -> None:
            callbacks = self.watchers.get(key, [])
            if on_change in callbacks:
                callbacks.remove(on_change)
            if not callbacks:
                self.watchers.pop(key, None)

        return _unsubscribe

    def subscriber_count(self, collection: str, doc_id: str) -> int:
        return len(self.watchers.get((collection, doc_id), []))


class FirestorePersistence:
    """DocumentStore backed by google-cloud-firestore.

    The client is blocking, so calls run in worker threads via
    ``asyncio.to_thread``. Watch callbacks arrive on Firestore's own thread
    and are handed to the event loop that created the subscription.
    """

    def __init__(self, client: Optional[Any] = None, project: Optional[str] = None) -> None:
        if client is not None:
            self.client = client
        else:
            self.client = firestore.Client(project=project or os.environ.get("GOOGLE_CLOUD_PROJECT"))
        self.server_timestamp = firestore.SERVER_TIMESTAMP

    def _doc(self, collection: str, doc_id: str) -> Any:
        return self.client.collection(collection).document(doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            snap = await asyncio.to_thread(self._doc(collection, doc_id).get)
        except GoogleAPIError as exc:
            logger.warning(f"[dreamtracker] firestore read failed path={collection}/{doc_id} error={exc}")
            raise StoreReadError(str(exc)) from exc
        if not snap.exists:
            return None
        return snap.to_dict() or {}

    async def set(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        ref = self._doc(collection, doc_id)
        try:
            await asyncio.to_thread(ref.set, fields, merge=merge)
        except GoogleAPIError as exc:
            logger.warning(f"[dreamtracker] firestore write failed path={collection}/{doc_id} error={exc}")
            raise StoreWriteError(str(exc)) from exc

    async def set_if_version(
        self, collection: str, doc_id: str, fields: Document, expected_version: Optional[int]
    ) -> None:
        """Overwrite the document only if its ``version`` still matches.

        Runs inside a Firestore transaction so the read and the write are
        atomic against the other client.
        """

        ref = self._doc(collection, doc_id)

        @firestore.transactional
        def _set_txn(transaction: Any) -> None:
            snap = ref.get(transaction=transaction)
            current = (snap.to_dict() or {}).get("version") if snap.exists else None
            if current != expected_version:
                raise ConcurrentUpdate(f"expected version {expected_version}, found {current}")
            transaction.set(ref, fields)

        try:
            await asyncio.to_thread(_set_txn, self.client.transaction())
        except GoogleAPIError as exc:
            logger.warning(f"[dreamtracker] firestore transaction failed path={collection}/{doc_id} error={exc}")
            raise StoreWriteError(str(exc)) from exc

    async def create(self, collection: str, doc_id: str, fields: Document) -> bool:
        """Write the document unless it already exists. Returns False if it did."""

        ref = self._doc(collection, doc_id)
        try:
            await asyncio.to_thread(ref.create, fields)
        except AlreadyExists:
            return False
        except GoogleAPIError as exc:
            logger.warning(f"[dreamtracker] firestore create failed path={collection}/{doc_id} error={exc}")
            raise StoreWriteError(str(exc)) from exc
        return True

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await asyncio.to_thread(self._doc(collection, doc_id).delete)
        except GoogleAPIError as exc:
            logger.warning(f"[dreamtracker] firestore delete failed path={collection}/{doc_id} error={exc}")
            raise StoreWriteError(str(exc)) from exc

    async def list_documents(self, collection: str) -> List[Document]:
        def _stream() -> List[Document]:
            return [snap.to_dict() or {} for snap in self.client.collection(collection).stream()]

        try:
            return await asyncio.to_thread(_stream)
        except GoogleAPIError as exc:
            logger.warning(f"[dreamtracker] firestore list failed collection={collection} error={exc}")
            raise StoreReadError(str(exc)) from exc

    def subscribe(self, collection: str, doc_id: str, on_change: OnChange) -> Unsubscribe:
        loop = asyncio.get_running_loop()

        def _on_snapshot(doc_snapshots: List[Any], changes: Any, read_time: Any) -> None:
            snap = doc_snapshots[0] if doc_snapshots else None
            data = (snap.to_dict() or {}) if snap is not None and snap.exists else None
            loop.call_soon_threadsafe(on_change, data)

        watch = self._doc(collection, doc_id).on_snapshot(_on_snapshot)
        return watch.unsubscribe
