"""Document storage for marketcore.

Two backends share one small collection interface:

- ``MongoDocumentStore`` wraps a ``pymongo`` database and is what production
  deployments use.
- ``JsonDocumentStore`` keeps each collection in a JSON file under a data
  directory. Every operation runs under an ``fcntl`` lock and writes through a
  temp file plus rename, so a single operation is atomic with respect to other
  threads and processes sharing the directory. It backs local development and
  the test suite.

Queries understand plain equality plus ``$eq``, ``$ne``, ``$gt``, ``$gte``,
``$lt``, ``$lte``, ``$in`` and ``$nin``. Updates understand ``$set``, ``$inc``
and ``$push``. That is the full surface the order core relies on, and both
backends evaluate it the same way.
"""

import copy
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol
from urllib.parse import urlparse

import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import DatabaseError, DuplicateDocumentError

logger = structlog.get_logger(__name__)

Query = dict[str, Any]
Update = dict[str, dict[str, Any]]
SortSpec = list[tuple[str, int]]

DEFAULT_DATABASE = "marketcore"

# (collection, keys) pairs created by create_indexes
INDEXES: list[tuple[str, SortSpec]] = [
    ("orders", [("buyer_id", ASCENDING), ("status", ASCENDING)]),
    ("orders", [("seller_id", ASCENDING), ("status", ASCENDING)]),
    ("orders", [("payment_transaction_id", ASCENDING)]),
    ("orders", [("created_at", DESCENDING)]),
    ("orders", [("status", ASCENDING), ("payment_status", ASCENDING)]),
    ("temp_orders", [("expires_at", ASCENDING)]),
    ("temp_orders", [("payment_transaction_id", ASCENDING)]),
    ("payment_transactions", [("buyer_id", ASCENDING), ("created_at", DESCENDING)]),
    ("payment_transactions", [("gateway_payment_id", ASCENDING)]),
    ("notifications", [("recipient_id", ASCENDING), ("created_at", DESCENDING)]),
    ("products", [("seller_id", ASCENDING), ("is_active", ASCENDING)]),
]


class Collection(Protocol):
    """The operations the order core performs on a collection."""

    name: str

    def insert_one(self, doc: dict[str, Any]) -> None: ...

    def insert_many(self, docs: list[dict[str, Any]]) -> None: ...

    def find_one(self, query: Query) -> dict[str, Any] | None: ...

    def find(
        self,
        query: Query,
        sort: SortSpec | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]: ...

    def count(self, query: Query) -> int: ...

    def find_one_and_update(self, query: Query, update: Update) -> dict[str, Any] | None:
        """Atomically update the first match; return the updated document or None."""
        ...

    def update_many(self, query: Query, update: Update) -> int: ...

    def delete_one(self, query: Query) -> bool: ...

    def delete_many(self, query: Query) -> int: ...


class DocumentStore(Protocol):
    def collection(self, name: str) -> Collection: ...

    def ping(self) -> None: ...

    def create_indexes(self) -> list[str]: ...

    def close(self) -> None: ...


# --- Query evaluation (JSON backend) ---


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value: Any, operand: Any) -> bool:
        if value is None or operand is None:
            return False
        try:
            return op(value, operand)
        except TypeError:
            return False

    return check


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda value, operand: value == operand,
    "$ne": lambda value, operand: value != operand,
    "$gt": _compare(lambda a, b: a > b),
    "$gte": _compare(lambda a, b: a >= b),
    "$lt": _compare(lambda a, b: a < b),
    "$lte": _compare(lambda a, b: a <= b),
    "$in": lambda value, operand: value in operand,
    "$nin": lambda value, operand: value not in operand,
}


def _is_operator_doc(cond: Any) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)


def matches(doc: dict[str, Any], query: Query) -> bool:
    """Return True if doc satisfies every condition of query."""
    for key, cond in query.items():
        value = doc.get(key)
        if _is_operator_doc(cond):
            for op, operand in cond.items():
                check = _OPERATORS.get(op)
                if check is None:
                    raise ValueError(f"Unsupported query operator: {op}")
                if not check(value, operand):
                    return False
        elif value != cond:
            return False
    return True


def apply_update(doc: dict[str, Any], update: Update) -> None:
    """Apply a $set/$inc/$push update to doc in place."""
    for op, fields in update.items():
        if op == "$set":
            for key, value in fields.items():
                doc[key] = copy.deepcopy(value)
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = doc.get(key, 0) + amount
        elif op == "$push":
            for key, value in fields.items():
                doc.setdefault(key, []).append(copy.deepcopy(value))
        else:
            raise ValueError(f"Unsupported update operator: {op}")


def sort_documents(docs: list[dict[str, Any]], sort: SortSpec) -> list[dict[str, Any]]:
    """Sort by several keys; later keys break ties of earlier ones."""
    result = list(docs)
    for key, direction in reversed(sort):
        result.sort(
            key=lambda d: (d.get(key) is None, d.get(key)),
            reverse=direction == DESCENDING,
        )
    return result


# --- JSON file backend ---


class JsonCollection:
    """A collection persisted as one JSON array file."""

    def __init__(self, data_dir: Path, name: str):
        self.name = name
        self.data_dir = data_dir
        self.path = data_dir / f"{name}.json"
        self._lock_path = data_dir / f".{name}.lock"

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self, exclusive: bool = True) -> Iterator[None]:
        """Hold a lock on the collection for the duration of one operation."""
        try:
            self._ensure_dir()
            lock_file = open(self._lock_path, "w")
        except OSError as e:
            raise DatabaseError(f"Cannot open lock for {self.name}: {e}") from e
        with lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise DatabaseError(f"Cannot read collection {self.name}: {e}") from e

    def _save(self, docs: list[dict[str, Any]]) -> None:
        """Save the collection atomically."""
        fd, temp_path = tempfile.mkstemp(
            dir=self.data_dir, prefix=f".{self.name}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(docs, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise DatabaseError(f"Cannot write collection {self.name}: {e}") from e

    def insert_one(self, doc: dict[str, Any]) -> None:
        self.insert_many([doc])

    def insert_many(self, docs: list[dict[str, Any]]) -> None:
        with self._lock():
            existing = self._load()
            ids = {d["_id"] for d in existing}
            for doc in docs:
                if doc["_id"] in ids:
                    raise DuplicateDocumentError(self.name, doc["_id"])
                ids.add(doc["_id"])
            existing.extend(copy.deepcopy(docs))
            self._save(existing)

    def find_one(self, query: Query) -> dict[str, Any] | None:
        with self._lock(exclusive=False):
            for doc in self._load():
                if matches(doc, query):
                    return doc
        return None

    def find(
        self,
        query: Query,
        sort: SortSpec | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        with self._lock(exclusive=False):
            docs = [d for d in self._load() if matches(d, query)]
        if sort:
            docs = sort_documents(docs, sort)
        docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return docs

    def count(self, query: Query) -> int:
        with self._lock(exclusive=False):
            return sum(1 for d in self._load() if matches(d, query))

    def find_one_and_update(self, query: Query, update: Update) -> dict[str, Any] | None:
        with self._lock():
            docs = self._load()
            for doc in docs:
                if matches(doc, query):
                    apply_update(doc, update)
                    self._save(docs)
                    return copy.deepcopy(doc)
        return None

    def update_many(self, query: Query, update: Update) -> int:
        with self._lock():
            docs = self._load()
            count = 0
            for doc in docs:
                if matches(doc, query):
                    apply_update(doc, update)
                    count += 1
            if count:
                self._save(docs)
            return count

    def delete_one(self, query: Query) -> bool:
        with self._lock():
            docs = self._load()
            for i, doc in enumerate(docs):
                if matches(doc, query):
                    docs.pop(i)
                    self._save(docs)
                    return True
        return False

    def delete_many(self, query: Query) -> int:
        with self._lock():
            docs = self._load()
            kept = [d for d in docs if not matches(d, query)]
            removed = len(docs) - len(kept)
            if removed:
                self._save(kept)
            return removed


class JsonDocumentStore:
    """Document store backed by a directory of JSON files."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._collections: dict[str, JsonCollection] = {}

    def collection(self, name: str) -> JsonCollection:
        if name not in self._collections:
            self._collections[name] = JsonCollection(self.data_dir, name)
        return self._collections[name]

    def ping(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(f"Data directory unavailable: {e}") from e
        if not os.access(self.data_dir, os.W_OK):
            raise DatabaseError(f"Data directory not writable: {self.data_dir}")

    def create_indexes(self) -> list[str]:
        # Scans are linear; there is nothing to build.
        return []

    def close(self) -> None:
        pass


# --- MongoDB backend ---


class MongoCollection:
    """Adapter from a pymongo collection to the Collection interface."""

    def __init__(self, collection: Any):
        self._collection = collection
        self.name = collection.name

    @contextmanager
    def _errors(self) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as e:
            key = (e.details or {}).get("keyValue", {}).get("_id", "?")
            raise DuplicateDocumentError(self.name, str(key)) from e
        except PyMongoError as e:
            logger.error("mongo_operation_failed", collection=self.name, error=str(e))
            raise DatabaseError(f"Database operation failed on {self.name}") from e

    def insert_one(self, doc: dict[str, Any]) -> None:
        with self._errors():
            self._collection.insert_one(dict(doc))

    def insert_many(self, docs: list[dict[str, Any]]) -> None:
        if not docs:
            return
        with self._errors():
            self._collection.insert_many([dict(d) for d in docs], ordered=True)

    def find_one(self, query: Query) -> dict[str, Any] | None:
        with self._errors():
            return self._collection.find_one(query)

    def find(
        self,
        query: Query,
        sort: SortSpec | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        with self._errors():
            cursor = self._collection.find(query)
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

    def count(self, query: Query) -> int:
        with self._errors():
            return self._collection.count_documents(query)

    def find_one_and_update(self, query: Query, update: Update) -> dict[str, Any] | None:
        with self._errors():
            return self._collection.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )

    def update_many(self, query: Query, update: Update) -> int:
        with self._errors():
            return self._collection.update_many(query, update).modified_count

    def delete_one(self, query: Query) -> bool:
        with self._errors():
            return self._collection.delete_one(query).deleted_count == 1

    def delete_many(self, query: Query) -> int:
        with self._errors():
            return self._collection.delete_many(query).deleted_count


class MongoDocumentStore:
    """Document store backed by a MongoDB database."""

    def __init__(self, client: Any, database: str = DEFAULT_DATABASE):
        self._client = client
        self._db = client[database]

    @classmethod
    def from_url(cls, url: str) -> "MongoDocumentStore":
        parsed = urlparse(url)
        database = parsed.path.lstrip("/") or DEFAULT_DATABASE
        client = MongoClient(url, tz_aware=True)
        return cls(client, database)

    def collection(self, name: str) -> MongoCollection:
        return MongoCollection(self._db[name])

    def ping(self) -> None:
        try:
            self._client.admin.command("ping")
        except PyMongoError as e:
            raise DatabaseError(f"Database unreachable: {e}") from e

    def create_indexes(self) -> list[str]:
        names = []
        try:
            for collection, keys in INDEXES:
                names.append(
                    f"{collection}.{self._db[collection].create_index(keys)}"
                )
        except PyMongoError as e:
            raise DatabaseError(f"Index creation failed: {e}") from e
        return names

    def close(self) -> None:
        self._client.close()


def open_store(url: str) -> DocumentStore:
    """
    Open a document store from a connection string.

    ``mongodb://`` and ``mongodb+srv://`` URLs open MongoDB; ``file://`` URLs
    and bare paths open a JSON file store in that directory.
    """
    if url.startswith(("mongodb://", "mongodb+srv://")):
        return MongoDocumentStore.from_url(url)
    if url.startswith("file://"):
        return JsonDocumentStore(Path(url[len("file://"):]).expanduser())
    return JsonDocumentStore(Path(url).expanduser())
