# backend/app/webhooks/registry.py

"""
テナントごとの Webhook 設定を保持するレジストリ。

- 永続化先は TenantConfigStore（デフォルトはインメモリ）
- 読み出しは TTL 付きのリードスルーキャッシュ経由
- 書き込みは必ずそのテナントのキャッシュを即時無効化する
- 外部から設定が書き換えられた場合は invalidate() を呼ぶ
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import httpx

from .schemas import (
    NotificationType,
    TenantConfig,
    TenantWebhookSummary,
    WebhookSettings,
)

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = ("http", "https")


class WebhookConfigError(Exception):
    """Webhook 設定まわりの基底例外。"""


class InvalidWebhookUrlError(WebhookConfigError):
    """Webhook URL の形式が不正な場合の例外。"""


class TenantNotFoundError(WebhookConfigError):
    """指定したテナントの設定が存在しない場合の例外。"""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Webhook config not found for tenant: {tenant_id}")
        self.tenant_id = tenant_id


def validate_webhook_url(url: str) -> str:
    """
    Webhook URL を検証し、前後の空白を除いた値を返す。

    http / https スキームかつホスト名を持つことだけを確認する。
    """
    text = (url or "").strip()
    if not text:
        raise InvalidWebhookUrlError("Webhook URL is empty")
    try:
        parsed = httpx.URL(text)
    except httpx.InvalidURL as exc:
        raise InvalidWebhookUrlError(f"Invalid webhook URL: {exc}") from exc

    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise InvalidWebhookUrlError(
            f"Webhook URL must use http or https (got {parsed.scheme or 'no scheme'!r})"
        )
    if not parsed.host:
        raise InvalidWebhookUrlError("Webhook URL must include a host")
    return text


class TenantConfigStore(Protocol):
    """TenantConfig の永続化先インターフェース。"""

    def get(self, tenant_id: str) -> Optional[TenantConfig]:  # pragma: no cover - Protocol
        ...

    def save(self, config: TenantConfig) -> None:  # pragma: no cover - Protocol
        ...

    def delete(self, tenant_id: str) -> bool:  # pragma: no cover - Protocol
        ...

    def list_all(self) -> List[TenantConfig]:  # pragma: no cover - Protocol
        ...


class InMemoryTenantConfigStore:
    """プロセス内の dict に保持するだけのストア。"""

    def __init__(self) -> None:
        self._configs: Dict[str, TenantConfig] = {}

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        config = self._configs.get(tenant_id)
        return config.model_copy(deep=True) if config is not None else None

    def save(self, config: TenantConfig) -> None:
        self._configs[config.tenant_id] = config.model_copy(deep=True)

    def delete(self, tenant_id: str) -> bool:
        return self._configs.pop(tenant_id, None) is not None

    def list_all(self) -> List[TenantConfig]:
        return [c.model_copy(deep=True) for c in self._configs.values()]


@dataclass
class _CacheEntry:
    config: TenantConfig
    expires_at: float


class WebhookRegistry:
    """
    TenantConfig の読み書き窓口。

    get_config() が返すのはコピーなので、呼び出し側で書き換えても
    キャッシュやストアには影響しない。
    """

    def __init__(
        self,
        store: Optional[TenantConfigStore] = None,
        *,
        cache_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: TenantConfigStore = store or InMemoryTenantConfigStore()
        self._cache_ttl_s = float(cache_ttl_s)
        self._clock = clock
        self._cache: Dict[str, _CacheEntry] = {}

    # ---- 読み出し ------------------------------------------------------

    def get_config(self, tenant_id: str) -> Optional[TenantConfig]:
        """テナントの設定を返す。未登録なら None。"""
        now = self._clock()
        cached = self._cache.get(tenant_id)
        if cached is not None and now < cached.expires_at:
            return cached.config.model_copy(deep=True)

        config = self._store.get(tenant_id)
        if config is None:
            self._cache.pop(tenant_id, None)
            return None

        if self._cache_ttl_s > 0:
            self._cache[tenant_id] = _CacheEntry(
                config=config.model_copy(deep=True),
                expires_at=now + self._cache_ttl_s,
            )
        return config

    def get_settings(self, tenant_id: str) -> WebhookSettings:
        """設定がなければデフォルトの WebhookSettings を返す。"""
        config = self.get_config(tenant_id)
        return config.settings if config is not None else WebhookSettings()

    def get_enabled_events(self, tenant_id: str) -> Dict[str, bool]:
        """イベント種別ごとの有効/無効（コピー）。"""
        return dict(self.get_settings(tenant_id).enabled_events)

    def list_configs(self) -> List[TenantWebhookSummary]:
        return [
            TenantWebhookSummary(
                tenant_id=c.tenant_id,
                has_primary=bool(c.primary_endpoint),
                has_backup=bool(c.backup_endpoint),
                settings=c.settings,
            )
            for c in self._store.list_all()
        ]

    # ---- 書き込み ------------------------------------------------------

    def invalidate(self, tenant_id: str) -> None:
        """キャッシュを破棄する（外部からの書き込み通知）。"""
        self._cache.pop(tenant_id, None)

    def set_config(self, config: TenantConfig) -> TenantConfig:
        """設定を丸ごと保存する。"""
        saved = config.model_copy(update={"updated_at": datetime.now(timezone.utc)}, deep=True)
        self._store.save(saved)
        self.invalidate(config.tenant_id)
        return saved

    def set_webhook(
        self,
        tenant_id: str,
        url: str,
        *,
        is_backup: bool = False,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> TenantConfig:
        """
        primary または backup の URL を登録する。

        settings を渡した場合は既存の設定にマージする。
        """
        url = validate_webhook_url(url)
        config = self._store.get(tenant_id) or TenantConfig(tenant_id=tenant_id)

        if is_backup:
            config.backup_endpoint = url
        else:
            config.primary_endpoint = url
        if settings:
            config.settings = _merge_settings(config.settings, settings)

        saved = self.set_config(config)
        logger.info(
            "Webhook %s set for tenant %s", "backup" if is_backup else "primary", tenant_id
        )
        return saved

    def update_settings(self, tenant_id: str, changes: Mapping[str, Any]) -> WebhookSettings:
        """
        設定を部分更新する。

        テナントが未登録の場合はエンドポイントなしの設定を作る。
        """
        config = self._store.get(tenant_id) or TenantConfig(tenant_id=tenant_id)
        config.settings = _merge_settings(config.settings, changes)
        saved = self.set_config(config)
        logger.info("Settings updated for tenant %s", tenant_id)
        return saved.settings

    def set_event_enabled(self, tenant_id: str, event_type: str, enabled: bool) -> bool:
        """
        イベント種別ごとの有効/無効を切り替える。

        :return: 未知のイベント種別なら False（何も変更しない）
        """
        if event_type not in _KNOWN_EVENT_TYPES:
            return False
        self.update_settings(tenant_id, {"enabled_events": {event_type: bool(enabled)}})
        return True

    def delete_webhook(self, tenant_id: str, *, is_backup: bool = False) -> bool:
        """
        primary または backup の URL だけを削除する。

        :return: テナントが未登録なら False
        """
        config = self._store.get(tenant_id)
        if config is None:
            return False

        if is_backup:
            config.backup_endpoint = None
        else:
            config.primary_endpoint = None
        self.set_config(config)
        logger.info(
            "Webhook %s deleted for tenant %s", "backup" if is_backup else "primary", tenant_id
        )
        return True

    def delete_config(self, tenant_id: str) -> bool:
        """テナントの設定を丸ごと削除する。"""
        deleted = self._store.delete(tenant_id)
        self.invalidate(tenant_id)
        if deleted:
            logger.info("All webhooks deleted for tenant %s", tenant_id)
        return deleted


_KNOWN_EVENT_TYPES = frozenset(t.value for t in NotificationType)


def _merge_settings(current: WebhookSettings, changes: Mapping[str, Any]) -> WebhookSettings:
    """
    現在の設定に部分更新を重ねる。

    enabled_events だけは dict 同士をマージする（指定していない種別は現状維持）。
    None の値は「変更なし」として扱う。
    """
    data = current.model_dump()
    for key, value in changes.items():
        if value is None:
            continue
        if key == "enabled_events":
            data["enabled_events"] = {**data["enabled_events"], **dict(value)}
        else:
            data[key] = value
    return WebhookSettings.model_validate(data)
