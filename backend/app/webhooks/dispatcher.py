# backend/app/webhooks/dispatcher.py

"""
notify() の受付から配信パスへの振り分けまでを担当するディスパッチャ。

    notify ──> Registry（設定・イベント有効判定）
           └─> Formatter（ペイロード生成）
           └─> BatchAggregator.add ──(バイパス / フラッシュ)──> send_direct
                                                                 ├─ RateLimiter
                                                                 ├─ WebhookClient.deliver(primary)
                                                                 └─ RetryQueue.record_primary_result

notify() は配信完了を待たない。最終結果は DeliveryOutcome として通知される。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from .batching import BatchAggregator
from .client import WebhookClient
from .formatter import WebhookPayloadFormatter
from .rate_limiter import SlidingWindowRateLimiter
from .registry import WebhookRegistry
from .retry_queue import RetryQueue
from .schemas import (
    NotificationEnvelope,
    NotificationPriority,
    NotificationType,
    NotifyResult,
    RejectReason,
)

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    def __init__(
        self,
        registry: WebhookRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        client: WebhookClient,
        retry_queue: RetryQueue,
        formatter: Optional[WebhookPayloadFormatter] = None,
        *,
        max_buffered_batches: int = 10,
        timeout_ms: Optional[float] = None,
    ) -> None:
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._client = client
        self._retry_queue = retry_queue
        self._formatter = formatter or WebhookPayloadFormatter()
        self._timeout_ms = timeout_ms
        self._aggregator = BatchAggregator(
            self.send_direct,
            combinable_field=getattr(self._formatter, "combinable_field", "embeds"),
            max_buffered_batches=max_buffered_batches,
            on_drop=self.drop_envelope,
        )

    @property
    def aggregator(self) -> BatchAggregator:
        return self._aggregator

    # ---- 受付 ----------------------------------------------------------

    async def notify(
        self,
        tenant_id: str,
        event_type: str,
        data: Optional[Mapping[str, Any]] = None,
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        """
        通知を受け付けて配信パイプラインに流す。

        設定がない／primary 未登録／イベント無効の場合は例外ではなく
        accepted=False の NotifyResult を返す。
        """
        config = self._registry.get_config(tenant_id)
        if config is None or not config.has_primary:
            logger.debug("No webhook configured for tenant %s", tenant_id)
            return NotifyResult(accepted=False, reason=RejectReason.CONFIG_MISSING)

        settings = config.settings
        if not settings.is_event_enabled(event_type):
            logger.info("Notification %s disabled for tenant %s", event_type, tenant_id)
            return NotifyResult(accepted=False, reason=RejectReason.EVENT_DISABLED)

        resolved = NotificationPriority(priority) if priority else settings.default_priority
        envelope = NotificationEnvelope(
            tenant_id=tenant_id,
            event_type=event_type,
            payload=self._formatter.format(event_type, data or {}, settings),
            priority=resolved,
            primary_endpoint=config.primary_endpoint,
            backup_endpoint=config.backup_endpoint,
        )

        batched = self._aggregator.add(envelope, settings)
        return NotifyResult(
            accepted=True,
            envelope_id=envelope.envelope_id,
            priority=resolved,
            batched=batched,
        )

    # ---- 直接配信パス --------------------------------------------------

    async def send_direct(self, envelope: NotificationEnvelope) -> None:
        """
        エンベロープを primary に 1 回送り、結果を RetryQueue の状態遷移に渡す。

        ローカルのレート制限に掛かった場合は送らずに attempt=0 で RetryQueue に積む。
        想定外の例外やキャンセルでは PERMANENT_FAILURE で終わらせ、例外は外に出さない
        （キャンセルは再送出する）。
        """
        attempts = 0
        try:
            decision = self._rate_limiter.admit(envelope.tenant_id)
            if not decision.admitted:
                logger.info(
                    "Rate limited locally: tenant=%s retry_after_ms=%.0f",
                    envelope.tenant_id,
                    decision.retry_after_ms,
                )
                self._retry_queue.enqueue(
                    envelope, 0, "rate limited locally", delay_ms=decision.retry_after_ms
                )
                return

            attempts = 1
            result = await self._client.deliver(
                envelope.primary_endpoint, envelope.payload, self._timeout_ms
            )
            self._retry_queue.record_primary_result(envelope, attempts, result)
        except asyncio.CancelledError:
            self._retry_queue.fail(envelope, attempts, "cancelled on shutdown")
            raise
        except Exception as exc:  # noqa: BLE001 - 配信タスクから例外を漏らさない
            logger.exception(
                "Unexpected error while sending webhook: tenant=%s event=%s attempt=%d",
                envelope.tenant_id,
                envelope.event_type,
                attempts,
            )
            self._retry_queue.fail(envelope, attempts, f"internal error: {exc}")

    def drop_envelope(self, envelope: NotificationEnvelope, reason: str) -> None:
        """バッファから送らずに捨てたエンベロープを終端状態にする。"""
        self._retry_queue.fail(envelope, 0, reason)

    # ---- 種別ごとのショートカット --------------------------------------

    async def notify_moderation_action(
        self,
        tenant_id: str,
        action: str,
        target: Optional[str] = None,
        moderator: Optional[str] = None,
        reason: Optional[str] = None,
        *,
        duration: Optional[str] = None,
        case_id: Optional[str] = None,
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        """action は ban / kick / mute / warn。"""
        return await self.notify(
            tenant_id,
            f"moderation_{action}",
            {
                "target": target,
                "moderator": moderator,
                "reason": reason,
                "duration": duration,
                "case_id": case_id,
            },
            priority,
        )

    async def notify_security_alert(
        self,
        tenant_id: str,
        alert_type: str,
        data: Mapping[str, Any],
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        """alert_type は spam / raid。"""
        return await self.notify(tenant_id, f"security_{alert_type}", data, priority)

    async def notify_user_activity(
        self,
        tenant_id: str,
        activity_type: str,
        user_id: str,
        data: Optional[Mapping[str, Any]] = None,
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        """activity_type は join / leave。"""
        payload: Dict[str, Any] = {"user": user_id, "user_id": user_id}
        payload.update(data or {})
        return await self.notify(tenant_id, f"user_{activity_type}", payload, priority)

    async def notify_config_change(
        self,
        tenant_id: str,
        setting: str,
        old_value: Any,
        new_value: Any,
        moderator: Optional[str] = None,
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        return await self.notify(
            tenant_id,
            NotificationType.CONFIG_CHANGE.value,
            {
                "setting": setting,
                "old_value": str(old_value),
                "new_value": str(new_value),
                "moderator": moderator,
            },
            priority,
        )

    async def notify_daily_summary(
        self,
        tenant_id: str,
        summary: Mapping[str, Any],
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        return await self.notify(
            tenant_id, NotificationType.DAILY_SUMMARY.value, summary, priority
        )

    async def send_custom_notification(
        self,
        tenant_id: str,
        data: Mapping[str, Any],
        priority: Optional[NotificationPriority] = None,
    ) -> NotifyResult:
        return await self.notify(tenant_id, NotificationType.CUSTOM.value, data, priority)
