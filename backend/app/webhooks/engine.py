# backend/app/webhooks/engine.py

"""
Webhook 配信エンジン本体。

各コンポーネント（Registry / RateLimiter / WebhookClient / RetryQueue /
BatchAggregator / Dispatcher）を組み立て、起動・停止のライフサイクルを持つ。
モジュールレベルのシングルトンは作らず、FastAPI では app.state に 1 つだけ載せる。

使い方:

    async with DeliveryEngine() as engine:
        engine.registry.set_webhook("tenant-1", "https://example.com/hook")
        await engine.notify("tenant-1", "moderation_ban", {"target": "42"})
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional

import httpx

from .client import WebhookClient
from .config import WebhookEngineSettings, get_webhook_engine_settings
from .dispatcher import WebhookDispatcher
from .formatter import WebhookPayloadFormatter
from .outcomes import (
    CompositeOutcomeListener,
    DeliveryOutcomeListener,
    LoggingOutcomeListener,
)
from .rate_limiter import SlidingWindowRateLimiter, monotonic_ms
from .registry import TenantNotFoundError, WebhookRegistry, validate_webhook_url
from .retry_queue import RetryQueue
from .schemas import DeliveryResult, NotificationPriority, NotifyResult, QueueStats

logger = logging.getLogger(__name__)


class EngineNotRunningError(RuntimeError):
    """start() 前、または stop() 後に notify() を呼んだ場合の例外。"""


class DeliveryEngine:
    def __init__(
        self,
        settings: Optional[WebhookEngineSettings] = None,
        *,
        registry: Optional[WebhookRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        formatter: Optional[WebhookPayloadFormatter] = None,
        listeners: Iterable[DeliveryOutcomeListener] = (),
        clock=None,
    ) -> None:
        """
        :param settings: 省略時は環境変数から読み込む
        :param http_client: 省略時は内部で生成し、stop() で閉じる
        :param clock: ミリ秒を返す単調クロック（RateLimiter / RetryQueue で共有）
        """
        self.settings = settings or get_webhook_engine_settings()
        clock = clock or monotonic_ms

        self.registry = registry or WebhookRegistry(cache_ttl_s=self.settings.config_cache_ttl_s)
        self.outcomes = CompositeOutcomeListener([LoggingOutcomeListener(), *listeners])
        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=self.settings.rate_limit_max_requests,
            window_ms=self.settings.rate_limit_window_ms,
            clock=clock,
        )
        self.client = WebhookClient(
            http_client,
            timeout_ms=self.settings.delivery_timeout_ms,
            default_retry_after_ms=self.settings.default_retry_after_ms,
            retry_after_unit=self.settings.retry_after_unit,
        )
        self.retry_queue = RetryQueue(
            self.client,
            self.rate_limiter,
            self.outcomes,
            max_attempts=self.settings.max_retry_attempts,
            base_delay_ms=self.settings.retry_base_delay_ms,
            max_delay_ms=self.settings.retry_max_delay_ms,
            jitter_ratio=self.settings.retry_jitter_ratio,
            clock=clock,
        )
        self.dispatcher = WebhookDispatcher(
            self.registry,
            self.rate_limiter,
            self.client,
            self.retry_queue,
            formatter
            or WebhookPayloadFormatter(
                username=self.settings.bot_username,
                avatar_url=self.settings.bot_avatar_url,
            ),
            max_buffered_batches=self.settings.max_buffered_batches,
        )
        self._running = False
        self._stopped = False

    # ---- ライフサイクル -----------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._stopped:
            raise EngineNotRunningError("DeliveryEngine cannot be restarted after stop()")
        self._running = True
        logger.info(
            "Webhook delivery engine started (max_retry_attempts=%d, rate_limit=%d/%.0fms)",
            self.settings.max_retry_attempts,
            self.settings.rate_limit_max_requests,
            self.settings.rate_limit_window_ms,
        )

    async def stop(self, *, flush_pending: bool = True, timeout_s: float = 5.0) -> None:
        """
        エンジンを停止する。

        - flush_pending=True ならバッファ中の通知をすべて送信に回す
        - バッチ送信とリトライ待ちの完了を合わせて timeout_s まで待つ
        - 残ったものはキャンセルし、PERMANENT_FAILURE として結果を通知する
        """
        if self._stopped:
            return
        self._running = False
        self._stopped = True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        await self.dispatcher.aggregator.stop(flush_pending=flush_pending, timeout_s=timeout_s)
        remaining = max(deadline - loop.time(), 0.0)
        if not await self.retry_queue.wait_idle(remaining):
            logger.warning("Retry queue did not drain within %.1fs; cancelling", timeout_s)
        await self.retry_queue.stop()
        await self.client.aclose()
        logger.info("Webhook delivery engine stopped")

    async def __aenter__(self) -> "DeliveryEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ---- 公開 API ------------------------------------------------------

    async def notify(
        self,
        tenant_id: str,
        event_type: str,
        data: Optional[Mapping[str, Any]] = None,
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        if not self._running:
            raise EngineNotRunningError("DeliveryEngine is not running")
        return await self.dispatcher.notify(tenant_id, event_type, data, priority)

    def add_outcome_listener(self, listener: DeliveryOutcomeListener) -> None:
        self.outcomes.add(listener)

    def get_queue_stats(self) -> QueueStats:
        aggregator = self.dispatcher.aggregator
        return QueueStats(
            retry_queue_size=self.retry_queue.size,
            retry_in_flight=self.retry_queue.in_flight_count,
            is_draining=self.retry_queue.is_draining,
            batch_queue_size=aggregator.buffered_tenants,
            buffered_notifications=aggregator.buffered_count,
            rate_limited_tenants=self.rate_limiter.tracked_tenants,
        )

    def clear_retry_queue(self) -> int:
        return self.retry_queue.clear()

    async def test_webhook(self, tenant_id: str, url: Optional[str] = None) -> DeliveryResult:
        """
        テスト用ペイロードを送る。

        url 未指定の場合は登録済みの primary を使う。
        :raises InvalidWebhookUrlError: URL の形式が不正
        :raises TenantNotFoundError: url 未指定かつ primary が未登録
        """
        if url is None:
            config = self.registry.get_config(tenant_id)
            if config is None or not config.primary_endpoint:
                raise TenantNotFoundError(tenant_id)
            url = config.primary_endpoint

        result = await self.client.test_webhook(validate_webhook_url(url))
        logger.info(
            "Webhook test for tenant %s: status=%s status_code=%s",
            tenant_id,
            result.status.value,
            result.status_code,
        )
        return result
