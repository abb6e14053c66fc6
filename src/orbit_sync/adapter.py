"""Contracts the sync core needs from the outside world.

A ``RemoteAdapter`` performs the actual calls against one remote collection
for one entity type. An ``AuthProvider`` answers whether we are connected
and hands out an opaque bearer token. Both are injected into the
orchestrator; the core never talks to the network or runs OAuth flows.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import ConfigStore, StoredToken, TOKEN_KEY
from .models import Entity, EntityType, ExternalService
from .utils.datetime import now_utc, parse_timestamp


logger = logging.getLogger(__name__)


@dataclass
class ExportResult:
    """Outcome of pushing one entity to the remote service."""

    success: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ImportResult:
    """Outcome of pulling the remote collection."""

    success: bool
    items: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


class RemoteAdapter(ABC):
    """Base class for remote adapters.

    Each adapter serves one entity type against one external service and
    translates between the service's payloads and the local entity shape.
    """

    entity_type: EntityType
    service: ExternalService

    def __init__(self):
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @property
    def provider_name(self) -> str:
        """Get human-readable service name."""
        return self.service.value.replace("_", " ").title()

    @abstractmethod
    async def export(self, entity: Entity, token: str) -> ExportResult:
        """Create or update the remote counterpart of ``entity``.

        Idempotent with respect to ``entity.sync_metadata.external_id`` when
        it is already known.
        """
        pass

    @abstractmethod
    async def import_pending(self, token: str) -> ImportResult:
        """Return the current remote collection for reconciliation."""
        pass

    @abstractmethod
    def to_local(self, remote: Dict[str, Any], entity_id: Optional[str] = None) -> Entity:
        """Map a remote payload into a local entity.

        Args:
            remote: Raw payload from the remote service
            entity_id: Local id to use; a new one is generated when omitted
        """
        pass

    async def delete(self, external_id: str, token: str) -> ExportResult:
        """Delete the remote counterpart. Adapters without delete support acknowledge."""
        self.logger.debug(f"Delete not supported by {self.provider_name}, skipping {external_id}")
        return ExportResult(success=True, remote_id=external_id)

    def remote_id(self, remote: Dict[str, Any]) -> Optional[str]:
        """Extract the remote identifier from a payload."""
        return remote.get("id")

    def remote_modified(self, remote: Dict[str, Any]) -> Optional[datetime]:
        """Extract the remote last-modified timestamp from a payload."""
        return parse_timestamp(remote.get("updated"))

    def new_local_id(self) -> str:
        return f"{self.entity_type.value}-{uuid.uuid4().hex[:12]}"


class AuthProvider(ABC):
    """Authentication signal consumed by the sync core."""

    @abstractmethod
    def is_authenticated(self) -> bool:
        pass

    @abstractmethod
    def get_access_token(self) -> Optional[str]:
        pass


class StaticTokenAuth(AuthProvider):
    """Fixed token, handy for scripts and tests."""

    def __init__(self, token: Optional[str]):
        self.token = token

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def get_access_token(self) -> Optional[str]:
        return self.token


class StoredTokenAuth(AuthProvider):
    """Token persisted in the config store by the application's login flow.

    The token counts only while the connection flag is set and it has not
    expired; refreshing it is the login flow's job.
    """

    def __init__(self, store: ConfigStore, clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.clock = clock

    def _token(self) -> StoredToken:
        return self.store.load(TOKEN_KEY, StoredToken)

    def get_access_token(self) -> Optional[str]:
        token = self._token()
        if not token.is_valid(self.clock()):
            return None
        return token.access_token

    def is_authenticated(self) -> bool:
        token = self._token()
        return token.connected and token.is_valid(self.clock())
