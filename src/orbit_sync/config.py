"""Configuration models and persistence for the sync subsystem.

Settings are pydantic models kept in a key-value ``ConfigStore``. Loading
never raises: a missing or corrupt entry falls back to the model defaults.
"""

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import EntityType, ExternalService, ResolutionStrategy


logger = logging.getLogger(__name__)

SYNC_CONFIG_KEY = "orbit_sync_config"
CONFLICT_CONFIG_KEY = "orbit_conflict_config"
TOKEN_KEY = "orbit_google_token"

DEFAULT_CONFIG_PATH = "~/.orbit/sync.yaml"
CONFIG_PATH_ENV = "ORBIT_SYNC_CONFIG"

M = TypeVar("M", bound=BaseModel)


class SyncSettings(BaseModel):
    """Outbound queue and background sync settings."""

    enabled: bool = True
    auto_sync_on_change: bool = True  # Drain immediately on create/update/delete
    background_sync_interval: int = 15  # minutes, 0 = disabled
    sync_tasks: bool = True
    sync_time_slots: bool = True
    sync_goals: bool = True
    sync_contacts: bool = True
    max_retries: int = 3

    @field_validator("background_sync_interval")
    @classmethod
    def validate_interval(cls, v):
        if v < 0:
            raise ValueError("Background sync interval cannot be negative")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v):
        if v < 1:
            raise ValueError("Max retries must be at least 1")
        return v

    def category_enabled(self, entity_type: EntityType) -> bool:
        """Check the per-category toggle for an entity type."""
        return {
            EntityType.TASK: self.sync_tasks,
            EntityType.TIME_SLOT: self.sync_time_slots,
            EntityType.OBJECTIVE: self.sync_goals,
            EntityType.FRIEND: self.sync_contacts,
        }[entity_type]


class ConflictResolutionSettings(BaseModel):
    """Conflict resolution policy."""

    default_strategy: ResolutionStrategy = ResolutionStrategy.LAST_WRITE_WINS
    auto_resolve: bool = False
    notify_on_conflict: bool = True
    per_service_strategy: Dict[ExternalService, ResolutionStrategy] = Field(default_factory=dict)

    def strategy_for(self, service: ExternalService) -> ResolutionStrategy:
        """Per-service override if configured, else the default."""
        return self.per_service_strategy.get(service, self.default_strategy)


class StoredToken(BaseModel):
    """Bearer token for the remote service, as persisted by the login flow."""

    connected: bool = False
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now < expires_at


def apply_updates(model: M, updates: Dict[str, Any]) -> M:
    """Return a validated copy of ``model`` with ``updates`` applied.

    Raises:
        ValueError: If an update names an unknown field
        pydantic.ValidationError: If an updated value is invalid
    """
    unknown = set(updates) - set(type(model).model_fields)
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    data = model.model_dump()
    data.update(updates)
    return type(model).model_validate(data)


class ConfigStore(ABC):
    """Key-value store for process-wide settings.

    Subclasses provide raw ``_read``/``_write``; typed access goes through
    ``load`` and ``save``.
    """

    @abstractmethod
    def _read(self, key: str) -> Optional[Any]:
        """Return the raw stored value for ``key`` or None."""
        pass

    @abstractmethod
    def _write(self, key: str, value: Any):
        """Persist a raw value for ``key``."""
        pass

    def load(self, key: str, model: Type[M]) -> M:
        """Load ``key`` as ``model``, falling back to defaults on any failure."""
        try:
            raw = self._read(key)
        except Exception as e:
            logger.error(f"Failed to read {key}: {e}")
            return model()

        if raw is None:
            logger.debug(f"No stored value for {key}, using defaults")
            return model()

        if not isinstance(raw, dict):
            logger.error(f"Stored value for {key} is not a mapping, using defaults")
            return model()

        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Invalid stored value for {key}, using defaults: {e}")
            return model()

    def save(self, key: str, value: BaseModel):
        """Persist a settings model under ``key``."""
        self._write(key, value.model_dump(mode="json"))


class MemoryConfigStore(ConfigStore):
    """In-process store, used by tests and embedding callers."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})

    def _read(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    def _write(self, key: str, value: Any):
        self.data[key] = value


class YamlConfigStore(ConfigStore):
    """Store all keys in one YAML document on disk."""

    def __init__(self, path: Optional[Path] = None):
        """Initialize the store.

        Args:
            path: Optional YAML file path; defaults to ``$ORBIT_SYNC_CONFIG``
                or ``~/.orbit/sync.yaml``
        """
        if path is None:
            path = Path(os.path.expanduser(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)))
        self.path = Path(path)

    def _load_document(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}

        with open(self.path, "r") as f:
            data = yaml.safe_load(f)

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a mapping")
        return data

    def _read(self, key: str) -> Optional[Any]:
        return self._load_document().get(key)

    def _write(self, key: str, value: Any):
        try:
            document = self._load_document()
        except (yaml.YAMLError, ValueError) as e:
            logger.warning(f"Overwriting unreadable config at {self.path}: {e}")
            document = {}

        document[key] = value
        document["_metadata"] = {
            "version": "1.0",
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write with atomic operation
        temp_file = self.path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            yaml.safe_dump(document, f, default_flow_style=False, indent=2, sort_keys=True)
        temp_file.replace(self.path)

        logger.debug(f"Saved {key} to {self.path}")
