"""Storage - In-memory and JSON-file repositories.

Repositories are the persistence boundary: they assign identities and
guard writes with a lock. Reads work on a snapshot of the stored values, so
a write landing mid-query is either seen or not, but never half-applied.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Generic, TypeVar

from pydantic import TypeAdapter, ValidationError

from api_workbench.errors import EntityNotFoundError
from api_workbench.history import Predicate, paginate
from api_workbench.models import (
    ApiRequest,
    Collection,
    Environment,
    HistoryRecord,
    Page,
    PageRequest,
)

logger = logging.getLogger(__name__)

E = TypeVar("E")


class StorageError(Exception):
    """Raised when a persisted store cannot be read or written."""


class InMemoryRepository(Generic[E]):
    """load-by-id / list-all / save / delete-by-id over a dict keyed by id."""

    entity_name = "Entity"

    def __init__(self, items: list[E] | None = None) -> None:
        self._items: dict[int, E] = {}
        self._next_id = 1
        self._lock = threading.Lock()
        for item in items or []:
            self.save(item)

    def _assign_id(self, entity: E, entity_id: int) -> E:
        entity.assign_id(entity_id)
        return entity

    def save(self, entity: E) -> E:
        """Insert (assigning an id) or replace an entity. Returns the stored entity."""
        with self._lock:
            if entity.id is None:
                entity = self._assign_id(entity, self._next_id)
            else:
                self._check_replace(entity)
            items = dict(self._items)
            items[entity.id] = entity
            self._commit(items)
            self._next_id = max(self._next_id, entity.id + 1)
            return entity

    def find_by_id(self, entity_id: int) -> E | None:
        return self._items.get(entity_id)

    def get(self, entity_id: int) -> E:
        entity = self.find_by_id(entity_id)
        if entity is None:
            raise EntityNotFoundError(self.entity_name, entity_id)
        return entity

    def exists(self, entity_id: int) -> bool:
        return entity_id in self._items

    def list_all(self) -> list[E]:
        with self._lock:
            return list(self._items.values())

    def delete(self, entity_id: int) -> bool:
        """Delete by id. Returns False if nothing was stored under that id."""
        with self._lock:
            if entity_id not in self._items:
                return False
            items = dict(self._items)
            del items[entity_id]
            self._commit(items)
            return True

    def count(self) -> int:
        return len(self._items)

    def _check_replace(self, entity: E) -> None:
        """Hook called before an entity that already has an id is stored."""

    def _commit(self, items: dict[int, E]) -> None:
        """Persist items, then make them the live state. Called with the lock held."""
        self._persist(items)
        self._items = items

    def _persist(self, items: dict[int, E]) -> None:
        """Hook for durable stores; raising leaves the live state untouched."""


class RequestRepository(InMemoryRepository[ApiRequest]):
    entity_name = "ApiRequest"


class CollectionRepository(InMemoryRepository[Collection]):
    entity_name = "Collection"


class EnvironmentRepository(InMemoryRepository[Environment]):
    entity_name = "Environment"

    def find_active(self) -> Environment | None:
        for environment in self.list_all():
            if environment.active:
                return environment
        return None


class HistoryRepository(InMemoryRepository[HistoryRecord]):
    """History records are frozen, so identity is assigned on a copy.

    Records are write-once: storing a record under an id that is already
    taken raises instead of replacing it.
    """

    entity_name = "History"

    def _assign_id(self, entity: HistoryRecord, entity_id: int) -> HistoryRecord:
        return entity.model_copy(update={"id": entity_id})

    def _check_replace(self, entity: HistoryRecord) -> None:
        if entity.id in self._items:
            raise ValueError(f"History record {entity.id} already exists and cannot be replaced")

    def find(self, predicates: list[Predicate], page_request: PageRequest) -> Page[HistoryRecord]:
        """Records matching every predicate, newest first, one page at a time."""
        return paginate(self.list_all(), predicates, page_request)

    def delete_where(self, predicate: Callable[[HistoryRecord], bool]) -> int:
        with self._lock:
            kept = {rid: record for rid, record in self._items.items() if not predicate(record)}
            removed = len(self._items) - len(kept)
            if removed:
                self._commit(kept)
            return removed

    def clear(self) -> int:
        with self._lock:
            removed = len(self._items)
            self._commit({})
            return removed


_HISTORY_ADAPTER = TypeAdapter(list[HistoryRecord])


class JsonFileHistoryRepository(HistoryRepository):
    """HistoryRepository persisted to a single JSON file.

    The whole file is rewritten on each mutation via a temp file and
    os.replace, so a crash never leaves a truncated store. The in-memory
    state changes only once the file is in place.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._loading = True
        super().__init__(self._load())
        self._loading = False

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> list[HistoryRecord]:
        if not self._path.exists():
            return []
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cannot read history file {self._path}: {e}") from e
        if not raw.strip():
            return []
        try:
            records = _HISTORY_ADAPTER.validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Invalid history file {self._path}: {e}") from e
        ids = [record.id for record in records if record.id is not None]
        if len(ids) != len(set(ids)):
            raise StorageError(f"Invalid history file {self._path}: duplicate record ids")
        return records

    def _persist(self, items: dict[int, HistoryRecord]) -> None:
        if self._loading:
            return
        data = _HISTORY_ADAPTER.dump_python(list(items.values()), mode="json")
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StorageError(f"Cannot write history file {self._path}: {e}") from e
        logger.debug("Wrote %d history records to %s", len(data), self._path)
