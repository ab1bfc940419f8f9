"""
Entity Store Abstraction.

Provides `EntityStore` (abstract base) and `InMemoryEntityStore`, a
process-local reference implementation for development and tests. The
storefront service ships a SQLAlchemy-backed store with the same contract.

The store enforces each entity's ``UNIQUE_TOGETHER`` constraint on insert
by raising `DuplicateEntityError`, and supports conditional increments so
capacity checks collapse into a single atomic update.
"""

from __future__ import annotations

import abc
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, TypeVar

from cratey.errors import DuplicateEntityError
from cratey.models import Entity, LibraryItem

E = TypeVar("E", bound=Entity)


class EntityStore(abc.ABC):
    """Abstract base for the storage collaborator used by fulfillment."""

    @abc.abstractmethod
    async def find(self, model: type[E], **filters: Any) -> list[E]:
        """Return every record of `model` whose fields equal `filters`."""
        ...

    @abc.abstractmethod
    async def get(self, model: type[E], entity_id: str) -> Optional[E]:
        ...

    @abc.abstractmethod
    async def create(self, record: E) -> E:
        """Insert `record`; raise `DuplicateEntityError` on a uniqueness violation."""
        ...

    @abc.abstractmethod
    async def update(self, model: type[E], entity_id: str, **fields: Any) -> None:
        ...

    @abc.abstractmethod
    async def increment(
        self,
        model: type[E],
        entity_id: str,
        field: str,
        amount: int = 1,
        *,
        ceiling: Optional[str] = None,
    ) -> Optional[int]:
        """
        Atomically add `amount` to `field` and return the new value.

        When `ceiling` names another field, the update only applies while the
        result stays within that field's value; otherwise nothing changes and
        None is returned.
        """
        ...

    @abc.abstractmethod
    def atomic(self):
        """Async context manager grouping writes into one unit of work."""
        ...


class InMemoryEntityStore(EntityStore):
    """
    Dict-backed store. No durability and no multi-instance consistency;
    suitable for a single process only.
    """

    def __init__(self):
        self._tables: dict[str, dict[str, Entity]] = defaultdict(dict)

    def _table(self, model: type[Entity]) -> dict[str, Entity]:
        return self._tables[model.__name__]

    async def find(self, model: type[E], **filters: Any) -> list[E]:
        return [
            record.model_copy(deep=True)
            for record in self._table(model).values()
            if all(getattr(record, key) == value for key, value in filters.items())
        ]

    async def get(self, model: type[E], entity_id: str) -> Optional[E]:
        record = self._table(model).get(entity_id)
        return record.model_copy(deep=True) if record else None

    async def create(self, record: E) -> E:
        table = self._table(type(record))
        if record.id in table:
            raise DuplicateEntityError(f"{type(record).__name__} {record.id} already exists")
        unique = type(record).UNIQUE_TOGETHER
        if unique:
            key = tuple(getattr(record, name) for name in unique)
            for existing in table.values():
                if tuple(getattr(existing, name) for name in unique) == key:
                    raise DuplicateEntityError(
                        f"{type(record).__name__} already exists for {dict(zip(unique, key))}"
                    )
        table[record.id] = record.model_copy(deep=True)
        return record

    async def update(self, model: type[E], entity_id: str, **fields: Any) -> None:
        table = self._table(model)
        if entity_id not in table:
            raise KeyError(f"{model.__name__} {entity_id} not found")
        table[entity_id] = table[entity_id].model_copy(update=fields)

    async def increment(
        self,
        model: type[E],
        entity_id: str,
        field: str,
        amount: int = 1,
        *,
        ceiling: Optional[str] = None,
    ) -> Optional[int]:
        table = self._table(model)
        if entity_id not in table:
            raise KeyError(f"{model.__name__} {entity_id} not found")
        record = table[entity_id]
        value = (getattr(record, field) or 0) + amount
        if ceiling is not None:
            limit = getattr(record, ceiling)
            if limit is not None and value > limit:
                return None
        table[entity_id] = record.model_copy(update={field: value})
        return value

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        # Records are replaced, never mutated, so a shallow snapshot is enough.
        snapshot = {name: dict(rows) for name, rows in self._tables.items()}
        try:
            yield
        except BaseException:
            self._tables = defaultdict(dict, snapshot)
            raise


async def owns_product(store: EntityStore, email: str, product_id: str) -> bool:
    """Ownership predicate. Always read fresh; entitlement checks are never cached."""
    items = await store.find(LibraryItem, buyer_email=email.strip().lower(), product_id=product_id)
    return bool(items)
