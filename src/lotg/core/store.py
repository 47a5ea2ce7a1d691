"""Document Store Gateway: keyed, indexed access to job and question records."""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConflictError, InvalidRequestError, StoreError
from .logging_config import get_audit_logger

logger = get_audit_logger("store")

BATCH_WRITE_LIMIT = 25

# index name -> (partition attribute, optional sort-key equality attribute)
INDEXES: Dict[str, Tuple[str, Optional[str]]] = {
    "type-createdAt": ("Type", None),
    "status-createdAt": ("status", None),
    "law-status": ("law", "status"),
    "hash": ("hash", None),
}

KEY_FIELDS = ("PK", "SK")


@dataclass
class BatchWriteResult:
    """Outcome of a chunked batch write."""
    staged: int = 0
    written: int = 0
    chunks_total: int = 0
    chunks_written: int = 0
    failed_chunks: List[int] = field(default_factory=list)
    failed_keys: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_chunks


def chunked(items: List[Dict[str, Any]], size: int = BATCH_WRITE_LIMIT) -> List[List[Dict[str, Any]]]:
    """Split items into consecutive chunks of at most ``size``."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class DocumentStore(ABC):
    """
    Gateway over a keyed document store with secondary indexes.

    Items are plain dicts carrying ``PK`` and ``SK`` key fields. The gateway
    enforces nothing across items; callers own their invariants. Backend
    failures surface as ``StoreError``, retryable ones as its subclass
    ``TransientStoreError``. A missing item is a ``None`` result, never an
    error.
    """

    batch_limit = BATCH_WRITE_LIMIT

    @abstractmethod
    def get(self, pk: str, sk: str = "METADATA") -> Optional[Dict[str, Any]]:
        """Point lookup by key."""

    @abstractmethod
    def put(self, item: Dict[str, Any]) -> None:
        """Write an item, replacing any existing item with the same key."""

    @abstractmethod
    def put_new(self, item: Dict[str, Any]) -> None:
        """Write an item only if its key is unused; raise ConflictError otherwise."""

    @abstractmethod
    def update(self, pk: str, sk: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Set the given attributes on an existing item; None if the item is absent."""

    @abstractmethod
    def query(
        self,
        index: str,
        value: Any,
        sort_value: Any = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Query a secondary index, ordered by ``createdAt``."""

    @abstractmethod
    def _write_chunk(self, items: List[Dict[str, Any]]) -> None:
        """Write one physical batch of at most ``batch_limit`` items."""

    def batch_put(self, items: List[Dict[str, Any]]) -> BatchWriteResult:
        """
        Write items in chunks of ``batch_limit``.

        Each chunk is a separate, non-atomic round trip. A failing chunk is
        recorded and the remaining chunks are still attempted, so the result
        tells the caller exactly which items were persisted.
        """
        result = BatchWriteResult(staged=len(items))
        chunks = chunked(items, self.batch_limit)
        result.chunks_total = len(chunks)

        for index, chunk in enumerate(chunks):
            try:
                self._write_chunk(chunk)
            except StoreError as e:
                logger.error("batch_chunk_failed", chunk=index, size=len(chunk), error=str(e))
                result.failed_chunks.append(index)
                result.failed_keys.extend(item["PK"] for item in chunk)
                result.errors.append(str(e))
                continue
            result.chunks_written += 1
            result.written += len(chunk)

        return result

    @staticmethod
    def _check_index(index: str) -> Tuple[str, Optional[str]]:
        if index not in INDEXES:
            raise InvalidRequestError(f"Unknown index: {index}")
        return INDEXES[index]


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed store used for tests and local runs."""

    def __init__(self):
        self._items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, pk: str, sk: str = "METADATA") -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get((pk, sk))
            return copy.deepcopy(item) if item is not None else None

    def put(self, item: Dict[str, Any]) -> None:
        self._require_keys(item)
        with self._lock:
            self._items[(item["PK"], item["SK"])] = copy.deepcopy(item)

    def put_new(self, item: Dict[str, Any]) -> None:
        self._require_keys(item)
        key = (item["PK"], item["SK"])
        with self._lock:
            if key in self._items:
                raise ConflictError(f"Item already exists: {item['PK']}")
            self._items[key] = copy.deepcopy(item)

    def update(self, pk: str, sk: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get((pk, sk))
            if item is None:
                return None
            for name, value in attrs.items():
                if name in KEY_FIELDS:
                    continue
                item[name] = copy.deepcopy(value)
            return copy.deepcopy(item)

    def query(
        self,
        index: str,
        value: Any,
        sort_value: Any = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        partition_attr, sort_attr = self._check_index(index)
        with self._lock:
            matches = [
                item for item in self._items.values()
                if item.get(partition_attr) == value
                and (sort_value is None or sort_attr is None or item.get(sort_attr) == sort_value)
                and all(item.get(k) == v for k, v in (filters or {}).items())
            ]
            matches.sort(key=lambda i: (i.get("createdAt", ""), i["PK"]), reverse=newest_first)
            if limit is not None:
                matches = matches[:limit]
            return copy.deepcopy(matches)

    def _write_chunk(self, items: List[Dict[str, Any]]) -> None:
        with self._lock:
            for item in items:
                self.put(item)

    @staticmethod
    def _require_keys(item: Dict[str, Any]) -> None:
        if not item.get("PK") or not item.get("SK"):
            raise InvalidRequestError("Items require PK and SK")

    def __len__(self) -> int:
        return len(self._items)
