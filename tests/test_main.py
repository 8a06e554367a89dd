"""
Tests for the composition root and the Supabase storage adapter.
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
import structlog

from wardrobe_sync.config import Settings
from wardrobe_sync.core.logging import clear_context
from wardrobe_sync.db import supabase_client
from wardrobe_sync.errors import ConfigurationError, UploadError, WardrobeSyncError
from wardrobe_sync.jobs.models import UploadKind
from wardrobe_sync.lifecycle import AppStateMonitor
from wardrobe_sync.main import background_uploads, build_background_uploads
from wardrobe_sync.storage.supabase_objects import SupabaseObjectStore

PUBLIC_URL = "https://test.supabase.co/storage/v1/object/public/wardrobe-images/user-1/item-1.jpg"


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        documents_dir=str(tmp_path / "documents"),
        queue_state_path=str(tmp_path / "documents" / "queue.json"),
        idle_debounce_ms=0,
    )


@pytest.fixture
def client():
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.get_public_url.return_value = PUBLIC_URL
    builder = client.table.return_value.update.return_value
    builder.eq.return_value = builder
    builder.execute.return_value = MagicMock(data=[{"id": "item-1"}])
    return client


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()
    clear_context()


class TestComposition:

    def test_build_uses_settings(self, cfg, client):
        service = build_background_uploads(cfg, client=client)

        assert service.bucket_for(UploadKind.WARDROBE) == "wardrobe-images"
        assert service.queue.max_attempts == 3

    def test_end_to_end_upload(self, cfg, client, tmp_path):
        camera = tmp_path / "photo.jpg"
        camera.write_bytes(b"\xff\xd8pixels")
        lifecycle = AppStateMonitor()
        idle = []

        async def scenario():
            async with background_uploads(cfg, lifecycle=lifecycle, client=client) as service:
                service.queue.on_idle(UploadKind.WARDROBE, idle.append)
                local = await service.save_image_locally(f"file://{camera}", "user-1")
                await service.queue_wardrobe_upload("item-1", local, "user-1")
                await service.queue.join()
                await asyncio.sleep(0.01)
                return local, service.queue.pending_count()

        local, pending = asyncio.run(scenario())

        assert pending == 0
        assert idle == [UploadKind.WARDROBE]
        client.storage.from_.assert_any_call("wardrobe-images")
        path, data, options = client.storage.from_.return_value.upload.call_args.args
        assert path == "user-1/item-1.jpg"
        assert data == b"\xff\xd8pixels"
        assert options["upsert"] == "true"
        client.table.return_value.update.assert_called_once_with({"image_uri": PUBLIC_URL})
        saved = json.loads((tmp_path / "documents" / "queue.json").read_text())
        assert json.loads(saved[cfg.queue_key]) == []
        assert local.startswith(f"file://{tmp_path}/documents/wardrobe-images/")

    def test_close_unhooks_lifecycle(self, cfg, client):
        lifecycle = AppStateMonitor(initial_state="background")

        async def scenario():
            async with background_uploads(cfg, lifecycle=lifecycle, client=client):
                pass

        asyncio.run(scenario())

        assert lifecycle._listeners == []


class TestSupabaseObjectStore:

    def test_upload_passes_file_options(self):
        client = MagicMock()
        store = SupabaseObjectStore(client)

        asyncio.run(store.upload("b", "u/x.jpg", b"data", "image/jpeg", upsert=False, cache_control="60"))

        client.storage.from_.assert_called_with("b")
        client.storage.from_.return_value.upload.assert_called_once_with(
            "u/x.jpg", b"data",
            {"content-type": "image/jpeg", "upsert": "false", "cache-control": "60"},
        )

    def test_upload_errors_are_wrapped(self):
        client = MagicMock()
        client.storage.from_.return_value.upload.side_effect = RuntimeError("413 Payload Too Large")
        store = SupabaseObjectStore(client)

        with pytest.raises(UploadError) as exc_info:
            asyncio.run(store.upload("b", "u/x.jpg", b"data", "image/jpeg"))

        assert exc_info.value.bucket == "b"
        assert exc_info.value.path == "u/x.jpg"
        assert "413" in str(exc_info.value)

    def test_remove_errors_are_wrapped(self):
        client = MagicMock()
        client.storage.from_.return_value.remove.side_effect = RuntimeError("denied")
        store = SupabaseObjectStore(client)

        with pytest.raises(WardrobeSyncError):
            asyncio.run(store.remove("b", ["u/x.jpg"]))


class TestSupabaseClient:

    @pytest.fixture(autouse=True)
    def fresh_client(self):
        supabase_client.reset_supabase()
        yield
        supabase_client.reset_supabase()

    def test_missing_credentials_raise(self):
        cfg = Settings(_env_file=None, supabase_url="https://test.supabase.co", supabase_service_role_key="")

        with pytest.raises(ConfigurationError, match="SUPABASE_SERVICE_ROLE_KEY"):
            supabase_client.get_supabase(cfg)

    def test_client_is_created_once(self, monkeypatch):
        created = []

        def fake_create_client(url, key):
            created.append((url, key))
            return MagicMock()

        monkeypatch.setattr(supabase_client, "create_client", fake_create_client)
        cfg = Settings(_env_file=None, supabase_url="https://test.supabase.co", supabase_service_role_key="secret")

        first = supabase_client.get_supabase(cfg)
        second = supabase_client.get_supabase(cfg)

        assert first is second
        assert created == [("https://test.supabase.co", "secret")]

    def test_build_without_client_uses_shared_client(self, cfg, monkeypatch):
        monkeypatch.setattr(supabase_client, "create_client", lambda url, key: MagicMock())
        cfg = cfg.model_copy(update={"supabase_url": "https://test.supabase.co", "supabase_service_role_key": "secret"})

        service = build_background_uploads(cfg)

        assert service.bucket_for(UploadKind.SCAN) == "scan-images"
