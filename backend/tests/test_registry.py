# backend/tests/test_registry.py

import pytest

from app.webhooks.registry import (
    InMemoryTenantConfigStore,
    InvalidWebhookUrlError,
    WebhookRegistry,
    validate_webhook_url,
)
from app.webhooks.schemas import NotificationPriority, TenantConfig

URL = "https://hooks.example.com/primary"
BACKUP_URL = "https://hooks.example.com/backup"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class CountingStore(InMemoryTenantConfigStore):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def get(self, tenant_id):
        self.reads += 1
        return super().get(tenant_id)


def test_get_config_is_cached_until_ttl_expires() -> None:
    clock = FakeClock()
    store = CountingStore()
    store.save(TenantConfig(tenant_id="t1", primary_endpoint=URL))
    registry = WebhookRegistry(store, cache_ttl_s=300.0, clock=clock)

    registry.get_config("t1")
    registry.get_config("t1")
    assert store.reads == 1

    clock.now = 299.0
    registry.get_config("t1")
    assert store.reads == 1

    clock.now = 300.0
    registry.get_config("t1")
    assert store.reads == 2


def test_external_write_is_visible_after_invalidate() -> None:
    """
    ストアを直接書き換えた場合、invalidate() 後の読み出しで新しい値が見えることを確認。
    """
    clock = FakeClock()
    store = InMemoryTenantConfigStore()
    store.save(TenantConfig(tenant_id="t1", primary_endpoint=URL))
    registry = WebhookRegistry(store, clock=clock)

    assert registry.get_config("t1").primary_endpoint == URL

    store.save(TenantConfig(tenant_id="t1", primary_endpoint=BACKUP_URL))
    # TTL 内なので古い値のまま
    assert registry.get_config("t1").primary_endpoint == URL

    registry.invalidate("t1")
    assert registry.get_config("t1").primary_endpoint == BACKUP_URL


def test_writes_through_registry_invalidate_cache() -> None:
    registry = WebhookRegistry(clock=FakeClock())
    registry.set_webhook("t1", URL)
    assert registry.get_config("t1").backup_endpoint is None

    registry.set_webhook("t1", BACKUP_URL, is_backup=True)
    config = registry.get_config("t1")
    assert config.primary_endpoint == URL
    assert config.backup_endpoint == BACKUP_URL


def test_returned_config_is_a_copy() -> None:
    registry = WebhookRegistry()
    registry.set_webhook("t1", URL)

    config = registry.get_config("t1")
    config.primary_endpoint = None
    config.settings.enabled_events["user_join"] = False

    fresh = registry.get_config("t1")
    assert fresh.primary_endpoint == URL
    assert fresh.settings.enabled_events["user_join"] is True


def test_unknown_tenant_returns_none_and_default_settings() -> None:
    registry = WebhookRegistry()
    assert registry.get_config("missing") is None
    settings = registry.get_settings("missing")
    assert settings.batching_enabled is True
    assert settings.is_event_enabled("config_change") is False


def test_set_webhook_merges_settings() -> None:
    registry = WebhookRegistry()
    registry.set_webhook("t1", URL, settings={"batch_interval_ms": 1000})
    registry.set_webhook("t1", BACKUP_URL, is_backup=True, settings={"max_batch_size": 3})

    settings = registry.get_settings("t1")
    assert settings.batch_interval_ms == 1000
    assert settings.max_batch_size == 3


def test_update_settings_creates_config_without_endpoint() -> None:
    registry = WebhookRegistry()
    settings = registry.update_settings("t1", {"default_priority": "low"})

    assert settings.default_priority == NotificationPriority.LOW
    config = registry.get_config("t1")
    assert config is not None
    assert config.has_primary is False


def test_set_event_enabled_merges_and_rejects_unknown_types() -> None:
    registry = WebhookRegistry()
    registry.set_webhook("t1", URL)

    assert registry.set_event_enabled("t1", "config_change", True) is True
    assert registry.set_event_enabled("t1", "no_such_event", True) is False

    enabled = registry.get_enabled_events("t1")
    assert enabled["config_change"] is True
    # 他の種別は既存の値のまま
    assert enabled["moderation_ban"] is True
    assert "no_such_event" not in enabled


def test_delete_webhook_and_delete_config() -> None:
    registry = WebhookRegistry()
    assert registry.delete_webhook("t1") is False

    registry.set_webhook("t1", URL)
    registry.set_webhook("t1", BACKUP_URL, is_backup=True)

    assert registry.delete_webhook("t1", is_backup=True) is True
    config = registry.get_config("t1")
    assert config.backup_endpoint is None
    assert config.primary_endpoint == URL

    assert registry.delete_config("t1") is True
    assert registry.get_config("t1") is None
    assert registry.delete_config("t1") is False


def test_list_configs_hides_urls() -> None:
    registry = WebhookRegistry()
    registry.set_webhook("a", URL)
    registry.set_webhook("b", BACKUP_URL, is_backup=True)

    summaries = {s.tenant_id: s for s in registry.list_configs()}
    assert summaries["a"].has_primary is True
    assert summaries["a"].has_backup is False
    assert summaries["b"].has_primary is False
    assert summaries["b"].has_backup is True
    assert "primary_endpoint" not in summaries["a"].model_dump()


@pytest.mark.parametrize(
    "url",
    ["", "   ", "ftp://hooks.example.com/x", "not a url", "https://", "hooks.example.com/path"],
)
def test_validate_webhook_url_rejects_invalid(url) -> None:
    with pytest.raises(InvalidWebhookUrlError):
        validate_webhook_url(url)


def test_validate_webhook_url_strips_and_accepts_http() -> None:
    assert validate_webhook_url("  http://localhost:8080/hook ") == "http://localhost:8080/hook"


def test_set_webhook_rejects_invalid_url() -> None:
    registry = WebhookRegistry()
    with pytest.raises(InvalidWebhookUrlError):
        registry.set_webhook("t1", "mailto:someone@example.com")
    assert registry.get_config("t1") is None
