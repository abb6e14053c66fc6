"""Entity store contract.

The rest of the application owns entity persistence. The sync core only
needs to read entities and write back reconciled values and sync metadata,
through the methods below.
"""

import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import Entity, EntityType


class EntityStore(ABC):
    """Access to the application's entities, per entity type."""

    @abstractmethod
    def get(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def list(self, entity_type: EntityType) -> List[Entity]:
        pass

    @abstractmethod
    def add(self, entity: Entity) -> Entity:
        pass

    @abstractmethod
    def update(self, entity: Entity) -> Entity:
        pass


class InMemoryEntityStore(EntityStore):
    """Dictionary-backed store. Hands out copies so callers cannot mutate it in place."""

    def __init__(self, entities: Optional[List[Entity]] = None):
        self._entities: Dict[EntityType, Dict[str, Entity]] = {t: {} for t in EntityType}
        for entity in entities or []:
            self.add(entity)

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        entity = self._entities[entity_type].get(entity_id)
        return copy.deepcopy(entity) if entity else None

    def list(self, entity_type: EntityType) -> List[Entity]:
        return [copy.deepcopy(e) for e in self._entities[entity_type].values()]

    def add(self, entity: Entity) -> Entity:
        self._entities[entity.entity_type][entity.id] = copy.deepcopy(entity)
        return entity

    def update(self, entity: Entity) -> Entity:
        if entity.id not in self._entities[entity.entity_type]:
            raise KeyError(f"No {entity.entity_type.value} with id {entity.id}")
        self._entities[entity.entity_type][entity.id] = copy.deepcopy(entity)
        return entity
