# backend/app/webhooks/batching.py

"""
低緊急度の通知をテナントごとにまとめて送るバッチ集約。

- URGENT、またはバッチ無効のテナントはバッファを通さず即時に直接配信パスへ
- それ以外はテナントのバッファに積み、フラッシュタイマー（テナントごとに最大 1 本）を張る
- フラッシュ時はバッファを丸ごと差し替え、古い順に max_batch_size 件までを 1 通にまとめる
- 溢れた分は新しいバッファとして次の間隔に回す
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .schemas import (
    BATCH_EVENT_TYPE,
    NotificationEnvelope,
    NotificationPriority,
    WebhookSettings,
)

logger = logging.getLogger(__name__)

DEFAULT_COMBINABLE_FIELD = "embeds"

SendFunc = Callable[[NotificationEnvelope], Awaitable[None]]
DropFunc = Callable[[NotificationEnvelope, str], None]


def merge_payloads(
    payloads: Sequence[Any],
    *,
    limit: int,
    combinable_field: str = DEFAULT_COMBINABLE_FIELD,
) -> Any:
    """
    複数のペイロードを 1 通にまとめる。

    - 全ペイロードが combinable_field にリストを持つ dict なら、そのリストを連結して
      limit 件に切り詰める（その他のキーは最新のペイロードのものを使う）
    - そうでなければ直近 limit 件をそのままリストで送る
    """
    if len(payloads) == 1:
        return payloads[0]

    combinable = all(
        isinstance(p, dict) and isinstance(p.get(combinable_field), list) for p in payloads
    )
    if combinable:
        merged = dict(payloads[-1])
        items: List[Any] = []
        for payload in payloads:
            items.extend(payload[combinable_field])
        merged[combinable_field] = items[:limit]
        # まとめ送りでは単発用の本文は使わない
        merged.pop("content", None)
        return merged

    return {"notifications": list(payloads)[-limit:]}


def combine_envelopes(
    envelopes: Sequence[NotificationEnvelope],
    *,
    limit: int,
    combinable_field: str = DEFAULT_COMBINABLE_FIELD,
) -> NotificationEnvelope:
    """バッファ内のエンベロープを 1 件の配信単位にまとめる。"""
    if not envelopes:
        raise ValueError("cannot combine an empty batch")
    if len(envelopes) == 1:
        return envelopes[0]

    latest = envelopes[-1]
    event_types = {e.event_type for e in envelopes}
    priority = min((e.priority for e in envelopes), key=lambda p: p.rank)

    return NotificationEnvelope(
        tenant_id=latest.tenant_id,
        event_type=event_types.pop() if len(event_types) == 1 else BATCH_EVENT_TYPE,
        payload=merge_payloads(
            [e.payload for e in envelopes],
            limit=limit,
            combinable_field=combinable_field,
        ),
        priority=priority,
        created_at=min(e.created_at for e in envelopes),
        primary_endpoint=latest.primary_endpoint,
        backup_endpoint=latest.backup_endpoint,
        item_count=sum(e.item_count for e in envelopes),
    )


@dataclass
class BatchBuffer:
    tenant_id: str
    interval_ms: int
    max_batch_size: int
    envelopes: List[NotificationEnvelope] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None


class BatchAggregator:
    """
    テナントごとのバッファとフラッシュタイマーを管理する。

    send には直接配信パス（レート制限 → 配信 → 失敗時 RetryQueue）を渡す。
    on_drop は送らずに捨てたエンベロープごとに呼ばれる（上限超過・停止時の破棄）。
    """

    def __init__(
        self,
        send: SendFunc,
        *,
        combinable_field: str = DEFAULT_COMBINABLE_FIELD,
        max_buffered_batches: int = 10,
        on_drop: Optional[DropFunc] = None,
    ) -> None:
        self._send = send
        self._on_drop = on_drop
        self._combinable_field = combinable_field
        self._max_buffered_batches = int(max_buffered_batches)
        self._buffers: Dict[str, BatchBuffer] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ---- 状態参照 ------------------------------------------------------

    @property
    def buffered_tenants(self) -> int:
        return len(self._buffers)

    @property
    def buffered_count(self) -> int:
        return sum(len(b.envelopes) for b in self._buffers.values())

    def pending_count(self, tenant_id: str) -> int:
        buffer = self._buffers.get(tenant_id)
        return len(buffer.envelopes) if buffer else 0

    def has_timer(self, tenant_id: str) -> bool:
        buffer = self._buffers.get(tenant_id)
        return buffer is not None and buffer.timer is not None

    # ---- 公開 API ------------------------------------------------------

    def add(self, envelope: NotificationEnvelope, settings: WebhookSettings) -> bool:
        """
        エンベロープをバッファに積む。

        :return: バッファに積んだ場合 True、バイパスして即時送信した場合 False
        """
        if not settings.batching_enabled or envelope.priority == NotificationPriority.URGENT:
            self._spawn(self._send(envelope))
            return False

        tenant_id = envelope.tenant_id
        buffer = self._buffers.get(tenant_id)
        if buffer is None:
            buffer = BatchBuffer(
                tenant_id=tenant_id,
                interval_ms=settings.batch_interval_ms,
                max_batch_size=settings.max_batch_size,
            )
            self._buffers[tenant_id] = buffer
        else:
            # 設定変更は次のフラッシュから反映
            buffer.interval_ms = settings.batch_interval_ms
            buffer.max_batch_size = settings.max_batch_size

        buffer.envelopes.append(envelope)
        self._truncate(buffer)

        if buffer.timer is None:
            self._start_timer(buffer)
        return True

    async def flush(self, tenant_id: str) -> Optional[NotificationEnvelope]:
        """
        テナントのバッファをフラッシュし、まとめたエンベロープを送信する。

        バッファが空なら何もしない。
        :return: 送信したエンベロープ（何もしなかった場合 None）
        """
        combined = self._take(tenant_id)
        if combined is not None:
            await self._send(combined)
        return combined

    async def flush_all(self) -> int:
        """全テナントのバッファを 1 回ずつフラッシュする。:return: 送信した件数"""
        flushed = 0
        for tenant_id in list(self._buffers):
            if await self.flush(tenant_id) is not None:
                flushed += 1
        return flushed

    async def stop(self, *, flush_pending: bool = True, timeout_s: Optional[float] = None) -> bool:
        """
        タイマーを止める。flush_pending=True なら残りをすべて送信に回す。

        送信はテナントごとに並行に走らせ、timeout_s まで待って残りはキャンセルする。
        :return: すべての送信が時間内に終わった場合 True
        """
        if flush_pending:
            # 溢れ分も含めて空になるまで取り出す
            while self._buffers:
                for tenant_id in list(self._buffers):
                    combined = self._take(tenant_id, carry_timer=False)
                    if combined is not None:
                        self._spawn(self._send(combined))
        else:
            dropped = self.buffered_count
            if dropped:
                logger.warning("Batch aggregator stopped with %d unsent notifications", dropped)
            buffers = list(self._buffers.values())
            self._buffers.clear()
            for buffer in buffers:
                if buffer.timer is not None:
                    buffer.timer.cancel()
                self._drop(buffer.envelopes, "dropped on shutdown")

        tasks = list(self._tasks)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout_s)
        if pending:
            logger.warning(
                "Batch sends did not finish within %ss; cancelling %d", timeout_s, len(pending)
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return not pending

    # ---- 内部ヘルパー -------------------------------------------------

    def _take(self, tenant_id: str, *, carry_timer: bool = True) -> Optional[NotificationEnvelope]:
        """
        バッファを差し替えて先頭 max_batch_size 件を 1 件にまとめて返す。

        残りは新しいバッファとして戻す（carry_timer=True なら次の間隔のタイマーを張る）。
        """
        buffer = self._buffers.pop(tenant_id, None)
        if buffer is None:
            return None

        current = asyncio.current_task()
        if buffer.timer is not None and buffer.timer is not current:
            buffer.timer.cancel()
        buffer.timer = None

        if not buffer.envelopes:
            return None

        batch = buffer.envelopes[: buffer.max_batch_size]
        remainder = buffer.envelopes[buffer.max_batch_size :]
        if remainder:
            carry = BatchBuffer(
                tenant_id=tenant_id,
                interval_ms=buffer.interval_ms,
                max_batch_size=buffer.max_batch_size,
                envelopes=remainder,
            )
            self._buffers[tenant_id] = carry
            if carry_timer:
                self._start_timer(carry)

        logger.info(
            "Flushing batch: tenant=%s items=%d remaining=%d",
            tenant_id,
            len(batch),
            len(remainder),
        )
        return combine_envelopes(
            batch,
            limit=buffer.max_batch_size,
            combinable_field=self._combinable_field,
        )

    def _drop(self, envelopes: Sequence[NotificationEnvelope], reason: str) -> None:
        if self._on_drop is None:
            return
        for envelope in envelopes:
            self._on_drop(envelope, reason)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Webhook send task failed", exc_info=exc)

    def _start_timer(self, buffer: BatchBuffer) -> None:
        buffer.timer = self._spawn(self._flush_after(buffer.tenant_id, buffer.interval_ms))

    async def _flush_after(self, tenant_id: str, interval_ms: int) -> None:
        await asyncio.sleep(interval_ms / 1000.0)
        await self.flush(tenant_id)

    def _truncate(self, buffer: BatchBuffer) -> None:
        limit = buffer.max_batch_size * self._max_buffered_batches
        overflow = len(buffer.envelopes) - limit
        if overflow > 0:
            dropped = buffer.envelopes[:overflow]
            del buffer.envelopes[:overflow]
            logger.warning(
                "Batch buffer full: tenant=%s dropped %d oldest notifications",
                buffer.tenant_id,
                overflow,
            )
            self._drop(dropped, "dropped: batch buffer full")
