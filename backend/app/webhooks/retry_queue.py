# backend/app/webhooks/retry_queue.py

"""
リトライ待ちの配信を保持し、期限が来たものから順に再配信するキュー。

エンベロープ 1 件の状態遷移:

    SENDING(primary) ─┬─ 成功 ──────────────→ DELIVERED
                      ├─ リトライ不可 ────────→ NON_RETRYABLE
                      └─ リトライ可 → RETRY(primary)
                            └─ attempt == max_attempts → FAILOVER
                                  └─ SENDING(backup) ─┬─ 成功 → DELIVERED
                                                      └─ 失敗 → PERMANENT_FAILURE

- テナントごとに (priority_rank, scheduled_for) をキーとする二分ヒープを持つ
- drain ループは各テナントの先頭だけを見るので、あるテナントの未来の
  エントリが他テナントの期限到来エントリを塞ぐことはない
- 同一テナントの試行は同時に 1 件まで（優先度→時刻の順序を保つ）
- 終端状態に到達したエンベロープは二度と送信しない
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .client import WebhookClient
from .outcomes import CompositeOutcomeListener, DeliveryOutcomeListener
from .rate_limiter import SlidingWindowRateLimiter, monotonic_ms
from .schemas import (
    DeliveryOutcome,
    DeliveryResult,
    DeliveryStatus,
    EndpointRole,
    NotificationEnvelope,
    OutcomeStatus,
)

logger = logging.getLogger(__name__)

# 2 ** 64 を超えるとどのみち上限に張り付くので指数を打ち切る
_MAX_BACKOFF_EXPONENT = 64


def compute_backoff_delay(attempt: int, base_delay_ms: float, max_delay_ms: float) -> float:
    """
    指数バックオフの待ち時間（ミリ秒）。

        delay(attempt) = min(base * 2 ** (attempt - 1), cap)

    attempt について単調非減少で、cap を超えない。
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    exponent = min(attempt - 1, _MAX_BACKOFF_EXPONENT)
    return float(min(base_delay_ms * (2 ** exponent), max_delay_ms))


@dataclass
class RetryEntry:
    """
    リトライ待ちの 1 件。

    attempt は primary に対して既に行った試行回数（0 = ローカルのレート制限で
    まだ 1 度も送っていない）。
    """

    envelope: NotificationEnvelope
    attempt: int
    scheduled_for: float
    last_error: Optional[str] = None

    @property
    def tenant_id(self) -> str:
        return self.envelope.tenant_id


_HeapItem = Tuple[int, float, int, RetryEntry]


class RetryQueue:
    """
    リトライ待ちエントリの保持と drain ループ。

    drain ループは enqueue 時に必要なら起動され（同時に 1 本だけ）、
    キューが空かつ実行中の試行がなくなると終了する。
    """

    def __init__(
        self,
        client: WebhookClient,
        rate_limiter: SlidingWindowRateLimiter,
        outcomes: Optional[DeliveryOutcomeListener] = None,
        *,
        max_attempts: int = 3,
        base_delay_ms: float = 2000.0,
        max_delay_ms: float = 30000.0,
        jitter_ratio: float = 0.0,
        timeout_ms: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
        max_terminal_records: int = 10000,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._client = client
        self._rate_limiter = rate_limiter
        self._outcomes = outcomes or CompositeOutcomeListener()
        self._max_attempts = int(max_attempts)
        self._base_delay_ms = float(base_delay_ms)
        self._max_delay_ms = float(max_delay_ms)
        self._jitter_ratio = float(jitter_ratio)
        self._timeout_ms = timeout_ms
        self._clock = clock or monotonic_ms
        self._rng = rng or random.Random()
        self._max_terminal_records = int(max_terminal_records)

        self._heaps: Dict[str, List[_HeapItem]] = {}
        self._seq = itertools.count()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._terminal: "OrderedDict[str, OutcomeStatus]" = OrderedDict()
        self._wakeup = asyncio.Event()
        self._drain_task: Optional[asyncio.Task] = None
        self._is_draining = False
        self._closed = False

    # ---- 状態参照 ------------------------------------------------------

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def size(self) -> int:
        return sum(len(heap) for heap in self._heaps.values())

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def is_draining(self) -> bool:
        return self._is_draining

    def pending_for(self, tenant_id: str) -> int:
        return len(self._heaps.get(tenant_id, ()))

    def entries(self, tenant_id: str) -> List[RetryEntry]:
        """テナントのエントリを処理順（優先度→時刻）で返す。"""
        return [item[3] for item in sorted(self._heaps.get(tenant_id, ()))]

    def is_terminal(self, envelope_id: str) -> bool:
        return envelope_id in self._terminal

    def terminal_status(self, envelope_id: str) -> Optional[OutcomeStatus]:
        return self._terminal.get(envelope_id)

    def backoff_delay(self, attempt: int) -> float:
        """ジッター込みの待ち時間。ジッターは短くする方向にだけ効く。"""
        delay = compute_backoff_delay(attempt, self._base_delay_ms, self._max_delay_ms)
        if self._jitter_ratio > 0:
            delay -= delay * self._jitter_ratio * self._rng.random()
        return delay

    # ---- 公開 API ------------------------------------------------------

    def enqueue(
        self,
        envelope: NotificationEnvelope,
        attempt: int,
        last_error: Optional[str] = None,
        *,
        delay_ms: Optional[float] = None,
    ) -> bool:
        """
        エンベロープをリトライ待ちに積む。

        :param attempt: primary に対して既に行った試行回数
        :param delay_ms: 省略時は backoff_delay(attempt)（attempt=0 なら即時）
        :return: 積んだ場合 True。終端状態のエンベロープは積まずに False
        """
        if self.is_terminal(envelope.envelope_id):
            logger.debug(
                "Ignoring enqueue of finished envelope: tenant=%s envelope=%s",
                envelope.tenant_id,
                envelope.envelope_id,
            )
            return False
        if attempt < 0 or attempt > self._max_attempts:
            raise ValueError(
                f"attempt must be between 0 and {self._max_attempts}, got {attempt}"
            )
        if self._closed:
            logger.warning(
                "Retry queue is closed; dropping envelope: tenant=%s event=%s",
                envelope.tenant_id,
                envelope.event_type,
            )
            return False

        if delay_ms is None:
            delay = self.backoff_delay(attempt) if attempt > 0 else 0.0
        else:
            delay = max(float(delay_ms), 0.0)

        entry = RetryEntry(
            envelope=envelope,
            attempt=attempt,
            scheduled_for=self._clock() + delay,
            last_error=last_error,
        )
        self._push(entry)
        logger.info(
            "Added to retry queue: tenant=%s event=%s attempt=%d delay_ms=%.0f",
            envelope.tenant_id,
            envelope.event_type,
            attempt,
            delay,
        )
        self._ensure_draining()
        return True

    def record_primary_result(
        self,
        envelope: NotificationEnvelope,
        attempt: int,
        result: DeliveryResult,
    ) -> Optional[OutcomeStatus]:
        """
        primary への attempt 回目の試行結果を状態遷移に反映する。

        直接配信パスと drain ループの両方から呼ばれる。
        :return: 終端状態になった場合はそのステータス、リトライに回した場合は None
        """
        if result.ok:
            return self._finish(
                envelope,
                OutcomeStatus.DELIVERED,
                attempts=attempt,
                role=EndpointRole.PRIMARY,
                message_id=result.message_id,
            )

        if not result.retryable:
            return self._finish(
                envelope,
                OutcomeStatus.NON_RETRYABLE,
                attempts=attempt,
                role=EndpointRole.PRIMARY,
                error=result.error,
            )

        delay: Optional[float] = None
        if result.status == DeliveryStatus.RATE_LIMITED and result.retry_after_ms is not None:
            delay = result.retry_after_ms
        self.enqueue(envelope, attempt, result.error, delay_ms=delay)
        return None

    def fail(
        self,
        envelope: NotificationEnvelope,
        attempts: int,
        error: str,
        *,
        role: Optional[EndpointRole] = None,
    ) -> OutcomeStatus:
        """
        エンベロープを PERMANENT_FAILURE で終わらせる。

        リトライキューを通らない経路（直接配信パス・バッチの破棄）からも使う。
        既に終端状態なら何もせずそのステータスを返す。
        """
        return self._finish(
            envelope,
            OutcomeStatus.PERMANENT_FAILURE,
            attempts=attempts,
            role=role,
            error=error,
        )

    def clear(self) -> int:
        """待ち中のエントリをすべて破棄する（実行中の試行は止めない）。"""
        cleared = self.size
        self._heaps.clear()
        self._wakeup.set()
        logger.info("Retry queue cleared: %d entries dropped", cleared)
        return cleared

    async def wait_idle(self, timeout_s: Optional[float] = None) -> bool:
        """キューが空になり drain ループが終了するまで待つ。"""
        task = self._drain_task
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout_s)
        return bool(done)

    async def stop(self) -> None:
        """
        drain ループと実行中の試行をキャンセルする。

        待ち中のエントリは 1 件ずつ PERMANENT_FAILURE として結果を通知してから破棄する。
        """
        self._closed = True
        pending = [item[3] for heap in self._heaps.values() for item in heap]
        if pending:
            logger.warning("Retry queue stopped with %d undelivered entries", len(pending))
        self._heaps.clear()
        for entry in pending:
            self.fail(
                entry.envelope,
                entry.attempt,
                f"dropped on shutdown (last error: {entry.last_error})",
            )

        tasks = list(self._in_flight.values())
        if self._drain_task is not None:
            tasks.append(self._drain_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    # ---- drain ループ --------------------------------------------------

    def _push(self, entry: RetryEntry) -> None:
        heap = self._heaps.setdefault(entry.tenant_id, [])
        heapq.heappush(
            heap,
            (entry.envelope.priority.rank, entry.scheduled_for, next(self._seq), entry),
        )
        self._wakeup.set()

    def _ensure_draining(self) -> None:
        if self._is_draining or self._closed:
            return
        loop = asyncio.get_running_loop()
        # タスク開始前にフラグを立てて二重起動を防ぐ
        self._is_draining = True
        self._drain_task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while not self._closed and (self._heaps or self._in_flight):
                self._wakeup.clear()
                next_due = self._dispatch_due()
                if not self._heaps and not self._in_flight:
                    break

                timeout: Optional[float] = None
                if next_due is not None:
                    timeout = max(next_due - self._clock(), 0.0) / 1000.0
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._is_draining = False
            self._drain_task = None

    def _dispatch_due(self) -> Optional[float]:
        """
        期限が来た各テナントの先頭エントリを試行タスクとして起動する。

        :return: 次に期限が来る時刻（待つべきものがなければ None）
        """
        now = self._clock()
        next_due: Optional[float] = None

        for tenant_id in list(self._heaps):
            if tenant_id in self._in_flight:
                continue
            heap = self._heaps[tenant_id]

            while heap and self.is_terminal(heap[0][3].envelope.envelope_id):
                heapq.heappop(heap)
            if not heap:
                del self._heaps[tenant_id]
                continue

            rank, scheduled_for, _, entry = heap[0]
            if scheduled_for > now:
                next_due = scheduled_for if next_due is None else min(next_due, scheduled_for)
                continue

            decision = self._rate_limiter.admit(tenant_id, now)
            if not decision.admitted:
                # 試行回数は消費せずに後ろへずらす
                heapq.heappop(heap)
                entry.scheduled_for = now + decision.retry_after_ms
                heapq.heappush(heap, (rank, entry.scheduled_for, next(self._seq), entry))
                next_due = (
                    entry.scheduled_for
                    if next_due is None
                    else min(next_due, entry.scheduled_for)
                )
                logger.debug(
                    "Retry entry rate limited locally: tenant=%s retry_after_ms=%.0f",
                    tenant_id,
                    decision.retry_after_ms,
                )
                continue

            heapq.heappop(heap)
            if not heap:
                del self._heaps[tenant_id]
            self._in_flight[tenant_id] = asyncio.get_running_loop().create_task(
                self._run_entry(entry)
            )

        return next_due

    async def _run_entry(self, entry: RetryEntry) -> None:
        try:
            await self._attempt(entry)
        except asyncio.CancelledError:
            self.fail(entry.envelope, entry.attempt, "cancelled on shutdown")
            raise
        except Exception as exc:  # noqa: BLE001 - drain ループは止めない
            logger.exception(
                "Unexpected error while delivering retry entry: tenant=%s event=%s",
                entry.tenant_id,
                entry.envelope.event_type,
            )
            self.fail(entry.envelope, entry.attempt, f"internal error: {exc}")
        finally:
            self._in_flight.pop(entry.tenant_id, None)
            self._wakeup.set()

    async def _attempt(self, entry: RetryEntry) -> None:
        envelope = entry.envelope
        if self.is_terminal(envelope.envelope_id):
            return

        if entry.attempt < self._max_attempts:
            result = await self._client.deliver(
                envelope.primary_endpoint, envelope.payload, self._timeout_ms
            )
            self.record_primary_result(envelope, entry.attempt + 1, result)
            return

        # primary を使い切った: backup へ 1 回だけ送る
        if not envelope.backup_endpoint:
            self._finish(
                envelope,
                OutcomeStatus.PERMANENT_FAILURE,
                attempts=entry.attempt,
                role=EndpointRole.PRIMARY,
                error=f"retries exhausted and no backup endpoint (last error: {entry.last_error})",
            )
            return

        logger.warning(
            "Primary webhook failed %d times for tenant %s, trying backup",
            entry.attempt,
            entry.tenant_id,
        )
        result = await self._client.deliver(
            envelope.backup_endpoint, envelope.payload, self._timeout_ms
        )
        if result.ok:
            self._finish(
                envelope,
                OutcomeStatus.DELIVERED,
                attempts=entry.attempt + 1,
                role=EndpointRole.BACKUP,
                message_id=result.message_id,
            )
        else:
            self._finish(
                envelope,
                OutcomeStatus.PERMANENT_FAILURE,
                attempts=entry.attempt + 1,
                role=EndpointRole.BACKUP,
                error=result.error,
            )

    # ---- 終端処理 ------------------------------------------------------

    def _finish(
        self,
        envelope: NotificationEnvelope,
        status: OutcomeStatus,
        *,
        attempts: int,
        role: Optional[EndpointRole] = None,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> OutcomeStatus:
        existing = self._terminal.get(envelope.envelope_id)
        if existing is not None:
            logger.debug(
                "Envelope already finished as %s: envelope=%s",
                existing.value,
                envelope.envelope_id,
            )
            return existing

        self._terminal[envelope.envelope_id] = status
        while len(self._terminal) > self._max_terminal_records:
            self._terminal.popitem(last=False)

        self._outcomes.on_outcome(
            DeliveryOutcome(
                envelope_id=envelope.envelope_id,
                tenant_id=envelope.tenant_id,
                event_type=envelope.event_type,
                status=status,
                attempts=attempts,
                endpoint_role=role,
                message_id=message_id,
                error=error,
                item_count=envelope.item_count,
            )
        )
        return status
