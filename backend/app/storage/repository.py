"""
repository.py — Storage interface for entity snapshots.

The engine is storage-agnostic: any backend that implements
``load / get / save / query / delete`` with an atomic single-entity
``save`` satisfies it. ``InMemoryRepository`` is the default backend for
development and tests (production: document or relational store).

Snapshots are deep-copied on the way in and out, so a caller mutating
an entity it loaded never changes the stored copy until it saves.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from backend.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Predicate = Callable[[T], bool]


class Repository(ABC, Generic[T]):
    """load(id) / save(entity) / query(filter) over one entity type."""

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Snapshot by id, or None."""

    @abstractmethod
    def save(self, entity: T) -> None:
        """Insert or replace atomically."""

    @abstractmethod
    def query(self, predicate: Optional[Predicate] = None) -> List[T]:
        """Snapshots matching ``predicate`` (all when None)."""

    @abstractmethod
    def delete(self, entity_id: str) -> bool:
        """Remove by id; False if absent."""

    def load(self, entity_id: str) -> T:
        entity = self.get(entity_id)
        if entity is None:
            raise NotFoundError(self.resource_name, id=entity_id)
        return entity

    def __len__(self) -> int:
        return len(self.query())

    resource_name: str = "Entity"


class InMemoryRepository(Repository[T]):
    """Dict-backed store keyed by ``getattr(entity, id_attr)``."""

    def __init__(self, id_attr: str, resource_name: str = "Entity"):
        self._id_attr = id_attr
        self.resource_name = resource_name
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, entity_id: str) -> Optional[T]:
        with self._lock:
            entity = self._items.get(entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def save(self, entity: T) -> None:
        entity_id = getattr(entity, self._id_attr)
        snapshot = copy.deepcopy(entity)
        with self._lock:
            self._items[entity_id] = snapshot

    def query(self, predicate: Optional[Predicate] = None) -> List[T]:
        with self._lock:
            items = list(self._items.values())
        return [
            copy.deepcopy(item) for item in items
            if predicate is None or predicate(item)
        ]

    def delete(self, entity_id: str) -> bool:
        with self._lock:
            return self._items.pop(entity_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
