"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from orbit_sync.adapter import ExportResult, ImportResult, RemoteAdapter, StaticTokenAuth  # noqa: E402
from orbit_sync.config import MemoryConfigStore  # noqa: E402
from orbit_sync.models import EntityType, ExternalService, SyncMetadata, SyncStatus, Task  # noqa: E402
from orbit_sync.orchestrator import SyncOrchestrator  # noqa: E402
from orbit_sync.store import InMemoryEntityStore  # noqa: E402
from orbit_sync.utils.datetime import date_part, parse_timestamp  # noqa: E402


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTaskAdapter(RemoteAdapter):
    """Google-Tasks-shaped adapter whose calls are AsyncMocks."""

    entity_type = EntityType.TASK
    service = ExternalService.GOOGLE_TASKS

    def __init__(self):
        super().__init__()
        self.export = AsyncMock(return_value=ExportResult(success=True, remote_id="remote-1"))
        self.delete = AsyncMock(return_value=ExportResult(success=True))
        self.import_pending = AsyncMock(return_value=ImportResult(success=True, items=[]))

    async def export(self, entity, token):
        raise NotImplementedError

    async def import_pending(self, token):
        raise NotImplementedError

    def to_local(self, remote: Dict[str, Any], entity_id: Optional[str] = None) -> Task:
        return Task(
            id=entity_id or self.new_local_id(),
            title=remote.get("title") or "",
            completed=remote.get("status") == "completed",
            completed_at=parse_timestamp(remote.get("completed")),
            scheduled_date=date_part(remote.get("due")),
            description=remote.get("notes") or "",
        )


def synced_task(task_id: str = "task-1", external_id: str = "remote-1", last_synced: datetime = T0,
                app_modified: Optional[datetime] = None, external_modified: Optional[datetime] = None,
                **fields) -> Task:
    """Task that was reconciled with the remote at ``last_synced``."""
    fields.setdefault("title", "Write report")
    return Task(
        id=task_id,
        sync_metadata=SyncMetadata(
            external_service=ExternalService.GOOGLE_TASKS,
            sync_status=SyncStatus.SYNCED,
            last_synced_at=last_synced,
            external_id=external_id,
            app_last_modified=app_modified,
            external_last_modified=external_modified,
        ),
        **fields,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return FakeTaskAdapter()


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest.fixture
def config_store():
    """Settings with immediate drains off so tests drain explicitly."""
    store = MemoryConfigStore()
    store.data["orbit_sync_config"] = {"auto_sync_on_change": False}
    return store


@pytest.fixture
def auth():
    return StaticTokenAuth("token-123")


@pytest.fixture
def orchestrator(auth, entity_store, config_store, adapter, clock):
    orch = SyncOrchestrator(
        auth=auth,
        entity_store=entity_store,
        config_store=config_store,
        adapters=[adapter],
        clock=clock,
        item_delay=0,
    )
    yield orch
    orch.shutdown()
