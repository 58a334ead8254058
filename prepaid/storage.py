"""
Ledger store interface and the in-memory backend.

The store is the single shared mutable resource. Services only talk to it
through `LedgerStore`: document primitives (create, get, update, query, all),
unique-key variants of create and update,
one atomic read-modify-write on a single numeric field, and the named
repository queries the recorder and calculators need. A relational or
document backend implements the primitives and may override the named
queries with indexed lookups.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional
from uuid import uuid4

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random

from .exceptions import DuplicateKeyError, NotFoundError, WriteConflict
from .logs import get_logger

log = get_logger(__name__)

USERS = "users"
TRANSACTIONS = "transactions"
CONSUMPTION = "unit_consumption"

COLLECTIONS = (USERS, TRANSACTIONS, CONSUMPTION)


class LedgerStore(ABC):
    @abstractmethod
    def create(self, collection: str, data: dict) -> dict:
        """Insert a document under a generated id and return it (with `id`)."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict) -> dict:
        """Partial update. Raises NotFoundError for an unknown id."""

    @abstractmethod
    def create_unique(self, collection: str, data: dict, unique_fields: tuple[str, ...]) -> dict:
        """`create` that raises DuplicateKeyError if another document already
        holds one of the non-empty `unique_fields` values. Check and insert are
        one atomic step."""

    @abstractmethod
    def update_unique(self, collection: str, doc_id: str, fields: dict, unique_fields: tuple[str, ...]) -> dict:
        """`update` with the same guarantee. The target document counts as a
        holder too: writing a value it already carries is a duplicate."""

    @abstractmethod
    def query(self, collection: str, field: str, value: Any) -> list[dict]:
        """Documents whose `field` equals `value`, in insertion order."""

    @abstractmethod
    def all(self, collection: str) -> list[dict]:
        ...

    @abstractmethod
    def transact(self, collection: str, doc_id: str, field: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically replace `field` with `fn(current)` and return the new value."""

    def find_user_by_meter(self, meter_no: str) -> Optional[dict]:
        return self._first(self.query(USERS, "meter_no", meter_no))

    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self._first(self.query(USERS, "email", email))

    def find_transaction_by_reference(self, reference: str) -> Optional[dict]:
        if not reference:
            return None
        return self._first(self.query(TRANSACTIONS, "reference", reference))

    def find_transaction_by_receipt(self, receipt_number: str) -> Optional[dict]:
        if not receipt_number:
            return None
        return self._first(self.query(TRANSACTIONS, "mpesa_receipt", receipt_number))

    def transactions_for_user(self, user_id: str) -> list[dict]:
        return self.query(TRANSACTIONS, "user_id", user_id)

    def consumption_for_user(self, user_id: str) -> list[dict]:
        return self.query(CONSUMPTION, "user_id", user_id)

    @staticmethod
    def _first(docs: list[dict]) -> Optional[dict]:
        return docs[0] if docs else None


class InMemoryStorage(LedgerStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._docs: dict[str, dict[str, dict]] = {name: {} for name in COLLECTIONS}
        self._versions: dict[tuple[str, str], int] = {}

    def _collection(self, collection: str) -> dict[str, dict]:
        try:
            return self._docs[collection]
        except KeyError:
            raise NotFoundError(f"Unknown collection {collection}") from None

    def create(self, collection: str, data: dict) -> dict:
        doc_id = str(uuid4())
        doc = {**copy.deepcopy(data), "id": doc_id}
        with self._lock:
            self._collection(collection)[doc_id] = doc
            self._versions[(collection, doc_id)] = 0
        return copy.deepcopy(doc)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update(self, collection: str, doc_id: str, fields: dict) -> dict:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            doc.update(copy.deepcopy(fields))
            doc["id"] = doc_id
            self._versions[(collection, doc_id)] += 1
            return copy.deepcopy(doc)

    def _check_unique(self, collection: str, data: dict, unique_fields: tuple[str, ...]) -> None:
        for field in unique_fields:
            value = data.get(field)
            if value is None or value == "":
                continue
            for doc_id, doc in self._docs[collection].items():
                if doc.get(field) == value:
                    raise DuplicateKeyError(collection, field, value, doc_id)

    def create_unique(self, collection: str, data: dict, unique_fields: tuple[str, ...]) -> dict:
        with self._lock:
            self._collection(collection)
            self._check_unique(collection, data, unique_fields)
            return self.create(collection, data)

    def update_unique(self, collection: str, doc_id: str, fields: dict, unique_fields: tuple[str, ...]) -> dict:
        with self._lock:
            if self._collection(collection).get(doc_id) is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            self._check_unique(collection, fields, unique_fields)
            return self.update(collection, doc_id, fields)

    def query(self, collection: str, field: str, value: Any) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(doc) for doc in self._collection(collection).values()
                if doc.get(field) == value
            ]

    def all(self, collection: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._collection(collection).values()]

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_random(min=0, max=0.05),
        retry=retry_if_exception_type(WriteConflict),
        reraise=True,
    )
    def transact(self, collection: str, doc_id: str, field: str, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            current = copy.deepcopy(doc.get(field))
            seen = self._versions[(collection, doc_id)]

        new_value = fn(current)

        with self._lock:
            if self._versions[(collection, doc_id)] != seen:
                log.debug("write conflict on %s/%s.%s, retrying", collection, doc_id, field)
                raise WriteConflict(collection, doc_id, field)
            self._docs[collection][doc_id][field] = new_value
            self._versions[(collection, doc_id)] = seen + 1
        return new_value
