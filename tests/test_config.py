"""Tests for settings models and config stores."""

from datetime import timedelta

import pytest
import yaml
from pydantic import ValidationError

from orbit_sync.adapter import StoredTokenAuth
from orbit_sync.config import (
    CONFIG_PATH_ENV,
    CONFLICT_CONFIG_KEY,
    SYNC_CONFIG_KEY,
    TOKEN_KEY,
    ConflictResolutionSettings,
    MemoryConfigStore,
    StoredToken,
    SyncSettings,
    YamlConfigStore,
    apply_updates,
)
from orbit_sync.models import EntityType, ExternalService, ResolutionStrategy

from conftest import T0


class TestSettingsModels:

    def test_defaults(self):
        sync = SyncSettings()
        conflict = ConflictResolutionSettings()

        assert sync.enabled and sync.auto_sync_on_change
        assert sync.background_sync_interval == 15
        assert sync.max_retries == 3
        assert conflict.default_strategy == ResolutionStrategy.LAST_WRITE_WINS
        assert conflict.auto_resolve is False
        assert conflict.notify_on_conflict is True

    def test_validators(self):
        with pytest.raises(ValidationError):
            SyncSettings(background_sync_interval=-1)
        with pytest.raises(ValidationError):
            SyncSettings(max_retries=0)

    def test_category_toggle(self):
        settings = SyncSettings(sync_contacts=False)
        assert settings.category_enabled(EntityType.TASK)
        assert not settings.category_enabled(EntityType.FRIEND)

    def test_per_service_strategy(self):
        settings = ConflictResolutionSettings(
            per_service_strategy={ExternalService.GOOGLE_CONTACTS: ResolutionStrategy.APP_WINS}
        )
        assert settings.strategy_for(ExternalService.GOOGLE_CONTACTS) == ResolutionStrategy.APP_WINS
        assert settings.strategy_for(ExternalService.GOOGLE_TASKS) == ResolutionStrategy.LAST_WRITE_WINS

    def test_apply_updates_coerces_and_validates(self):
        updated = apply_updates(SyncSettings(), {"background_sync_interval": "30", "enabled": "false"})
        assert updated.background_sync_interval == 30
        assert updated.enabled is False

        with pytest.raises(ValueError, match="Unknown setting"):
            apply_updates(SyncSettings(), {"nope": 1})


class TestMemoryConfigStore:

    def test_missing_key_gives_defaults(self):
        assert MemoryConfigStore().load(SYNC_CONFIG_KEY, SyncSettings) == SyncSettings()

    def test_corrupt_values_give_defaults(self):
        store = MemoryConfigStore({
            SYNC_CONFIG_KEY: "not a mapping",
            CONFLICT_CONFIG_KEY: {"default_strategy": "coin_flip"},
        })
        assert store.load(SYNC_CONFIG_KEY, SyncSettings) == SyncSettings()
        assert store.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings) == ConflictResolutionSettings()

    def test_save_stores_json_values(self):
        store = MemoryConfigStore()
        store.save(CONFLICT_CONFIG_KEY, ConflictResolutionSettings(default_strategy=ResolutionStrategy.MERGE))

        assert store.data[CONFLICT_CONFIG_KEY]["default_strategy"] == "merge"
        loaded = store.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings)
        assert loaded.default_strategy == ResolutionStrategy.MERGE


class TestYamlConfigStore:

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "sync.yaml"
        store = YamlConfigStore(path)
        store.save(SYNC_CONFIG_KEY, SyncSettings(max_retries=5))
        store.save(CONFLICT_CONFIG_KEY, ConflictResolutionSettings(auto_resolve=True))

        document = yaml.safe_load(path.read_text())
        assert document[SYNC_CONFIG_KEY]["max_retries"] == 5
        assert "_metadata" in document
        assert not path.with_suffix(".tmp").exists()

        reloaded = YamlConfigStore(path)
        assert reloaded.load(SYNC_CONFIG_KEY, SyncSettings).max_retries == 5
        assert reloaded.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings).auto_resolve is True

    def test_unreadable_file_gives_defaults(self, tmp_path):
        path = tmp_path / "sync.yaml"
        path.write_text("orbit_sync_config: [unclosed")

        store = YamlConfigStore(path)
        assert store.load(SYNC_CONFIG_KEY, SyncSettings) == SyncSettings()

        store.save(SYNC_CONFIG_KEY, SyncSettings(enabled=False))
        assert store.load(SYNC_CONFIG_KEY, SyncSettings).enabled is False

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))
        assert YamlConfigStore().path == path


class TestStoredTokenAuth:

    def test_valid_token(self):
        store = MemoryConfigStore()
        store.save(TOKEN_KEY, StoredToken(connected=True, access_token="abc", expires_at=T0 + timedelta(hours=1)))
        auth = StoredTokenAuth(store, clock=lambda: T0)

        assert auth.is_authenticated()
        assert auth.get_access_token() == "abc"

    def test_expired_token(self):
        store = MemoryConfigStore()
        store.save(TOKEN_KEY, StoredToken(connected=True, access_token="abc", expires_at=T0 - timedelta(seconds=1)))
        auth = StoredTokenAuth(store, clock=lambda: T0)

        assert not auth.is_authenticated()
        assert auth.get_access_token() is None

    def test_disconnected(self):
        store = MemoryConfigStore()
        store.save(TOKEN_KEY, StoredToken(connected=False, access_token="abc", expires_at=T0 + timedelta(hours=1)))
        assert not StoredTokenAuth(store, clock=lambda: T0).is_authenticated()

    def test_missing_token(self):
        assert not StoredTokenAuth(MemoryConfigStore(), clock=lambda: T0).is_authenticated()
