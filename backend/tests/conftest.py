"""
Shared fixtures for voucher engine tests.

InMemoryDatabase stands in for a motor database. Every collection method
yields to the event loop once and then applies its whole operation without
further suspension, the way a single-document MongoDB write is atomic. That is
enough to interleave concurrent coroutines between calls and exercise the
conditional-update and unique-index guards.
"""

import asyncio
import copy
import re
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from voucher_engine.core.database import ensure_indexes
from voucher_engine.models.voucher import CancellationInitiator, DiscountType, Voucher

_MISSING = object()

NOW = datetime(2025, 6, 1, 12, 0, 0)


def _compare(op: str, value: Any, operand: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    return value >= operand


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(key.startswith("$") for key in condition):
        for op, operand in condition.items():
            if op in ("$lt", "$lte", "$gt", "$gte"):
                if not _compare(op, value, operand):
                    return False
            elif op == "$in":
                if value is _MISSING or value not in operand:
                    return False
            elif op == "$ne":
                if (None if value is _MISSING else value) == operand:
                    return False
            elif op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            elif op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if not isinstance(value, str) or not re.search(operand, value, flags):
                    return False
            elif op == "$options":
                continue
            else:
                raise NotImplementedError(f"Unsupported operator {op}")
        return True

    if condition is None:
        return value is _MISSING or value is None
    if value is _MISSING:
        return False
    return value == condition


def matches(document: dict, query: Optional[dict]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(document, sub_query) for sub_query in condition):
                return False
        elif key == "$and":
            if not all(matches(document, sub_query) for sub_query in condition):
                return False
        elif not _matches_condition(document.get(key, _MISSING), condition):
            return False
    return True


def apply_update(document: dict, update: dict):
    for op, fields in update.items():
        if op == "$set":
            document.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                document[key] = document.get(key, 0) + amount
        elif op == "$unset":
            for key in fields:
                document.pop(key, None)
        else:
            raise NotImplementedError(f"Unsupported update operator {op}")


class InMemoryCursor:
    def __init__(self, documents: List[dict]):
        self._documents = documents
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, field_direction in reversed(keys):
            self._documents.sort(
                key=lambda doc: (doc.get(field) is not None, doc.get(field)),
                reverse=field_direction < 0
            )
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    async def to_list(self, length: Optional[int] = None):
        await asyncio.sleep(0)
        documents = self._documents[self._skip:]
        if self._limit:
            documents = documents[:self._limit]
        if length:
            documents = documents[:length]
        return [copy.deepcopy(doc) for doc in documents]


class InMemoryCollection:
    def __init__(self, name: str):
        self.name = name
        self.documents: List[dict] = []
        self.unique_indexes: List[Dict[str, Any]] = []
        self._next_id = 1

    async def create_index(self, keys, unique: bool = False, partialFilterExpression: Optional[dict] = None, **kwargs):
        fields = [keys] if isinstance(keys, str) else [field for field, _ in keys]
        if unique:
            self.unique_indexes.append({"fields": fields, "partial": partialFilterExpression})
        return "_".join(fields)

    def _check_unique(self, candidate: dict, ignore: Optional[dict] = None):
        for index in self.unique_indexes:
            if index["partial"] and not matches(candidate, index["partial"]):
                continue
            key = tuple(candidate.get(field) for field in index["fields"])
            for existing in self.documents:
                if existing is ignore:
                    continue
                if index["partial"] and not matches(existing, index["partial"]):
                    continue
                if tuple(existing.get(field) for field in index["fields"]) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {index['fields']}")

    def _first(self, query: Optional[dict]) -> Optional[dict]:
        for document in self.documents:
            if matches(document, query):
                return document
        return None

    async def find_one(self, query: Optional[dict] = None, projection: Optional[dict] = None):
        await asyncio.sleep(0)
        document = self._first(query)
        return copy.deepcopy(document) if document else None

    def find(self, query: Optional[dict] = None, projection: Optional[dict] = None):
        return InMemoryCursor([doc for doc in self.documents if matches(doc, query)])

    async def count_documents(self, query: Optional[dict] = None):
        await asyncio.sleep(0)
        return sum(1 for doc in self.documents if matches(doc, query))

    async def insert_one(self, document: dict):
        await asyncio.sleep(0)
        document.setdefault("_id", f"{self.name}_{self._next_id}")
        stored = copy.deepcopy(document)
        self._check_unique(stored)
        self._next_id += 1
        self.documents.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    def _update(self, document: dict, update: dict):
        updated = copy.deepcopy(document)
        apply_update(updated, update)
        self._check_unique(updated, ignore=document)
        document.clear()
        document.update(updated)

    async def update_one(self, query: dict, update: dict):
        await asyncio.sleep(0)
        document = self._first(query)
        if document is None:
            return SimpleNamespace(matched_count=0, modified_count=0)
        self._update(document, update)
        return SimpleNamespace(matched_count=1, modified_count=1)

    async def find_one_and_update(self, query: dict, update: dict, return_document=ReturnDocument.BEFORE, **kwargs):
        await asyncio.sleep(0)
        document = self._first(query)
        if document is None:
            return None
        before = copy.deepcopy(document)
        self._update(document, update)
        return copy.deepcopy(document) if return_document == ReturnDocument.AFTER else before

    async def delete_one(self, query: dict):
        await asyncio.sleep(0)
        document = self._first(query)
        if document is None:
            return SimpleNamespace(deleted_count=0)
        self.documents.remove(document)
        return SimpleNamespace(deleted_count=1)


class InMemoryDatabase:
    def __init__(self):
        self._collections: Dict[str, InMemoryCollection] = {}

    def __getitem__(self, name: str) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    def __getattr__(self, name: str) -> InMemoryCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest_asyncio.fixture
async def db():
    database = InMemoryDatabase()
    await ensure_indexes(database)
    return database


@pytest.fixture
def now():
    return NOW


def build_voucher(**overrides) -> dict:
    """A stored voucher document, active since a week before NOW."""
    fields = {
        "code": "SAVE20",
        "name": "Save 20%",
        "discount_type": DiscountType.PERCENTAGE,
        "discount_value": 20,
        "valid_from": NOW - timedelta(days=7),
        "created_at": NOW - timedelta(days=7),
        "updated_at": NOW - timedelta(days=7),
    }
    fields.update(overrides)
    return Voucher(**fields).model_dump(by_alias=True, exclude={"id"})


def build_refund_voucher(initiator=CancellationInitiator.SELLER, issued_at=None, **overrides) -> dict:
    """A refund voucher document as issued for a cancelled order."""
    issued_at = issued_at or NOW - timedelta(days=20)
    fields = {
        "code": "REFUND-ABC123",
        "name": "Refund for order order123",
        "discount_type": DiscountType.FIXED_AMOUNT,
        "discount_value": 1500,
        "assigned_to_user_id": "user123",
        "usage_limit": 1,
        "usage_limit_per_user": 1,
        "valid_from": issued_at,
        "cancellation_initiator": initiator,
        "source_order_id": "order123",
        "monetary_refund_eligible_at": (
            issued_at + timedelta(days=14) if initiator == CancellationInitiator.SELLER else None
        ),
        "created_at": issued_at,
        "updated_at": issued_at,
    }
    fields.update(overrides)
    return Voucher(**fields).model_dump(by_alias=True, exclude={"id"})


@pytest_asyncio.fixture
async def insert_voucher(db):
    async def _insert(document: dict) -> dict:
        await db.vouchers.insert_one(document)
        document.pop("_id", None)
        return document
    return _insert
