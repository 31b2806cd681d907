# backend/tests/test_delivery_engine.py

import asyncio
import json
from decimal import Decimal
from typing import List

import httpx
import pytest

from app.webhooks.config import WebhookEngineSettings
from app.webhooks.engine import DeliveryEngine, EngineNotRunningError
from app.webhooks.registry import TenantNotFoundError
from app.webhooks.schemas import (
    DeliveryOutcome,
    DeliveryStatus,
    NotificationPriority,
    OutcomeStatus,
    RejectReason,
)

PRIMARY = "https://primary.example.com/hook"
BACKUP = "https://backup.example.com/hook"

FAST_SETTINGS = WebhookEngineSettings(
    retry_base_delay_ms=1.0,
    retry_max_delay_ms=5.0,
    rate_limit_max_requests=100,
)


class RecordingListener:
    def __init__(self) -> None:
        self.outcomes: List[DeliveryOutcome] = []

    def on_outcome(self, outcome: DeliveryOutcome) -> None:
        self.outcomes.append(outcome)


class RecordingTransport:
    def __init__(self, status_by_host=None) -> None:
        self.status_by_host = status_by_host or {}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_by_host.get(request.url.host, 200))

    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


def _make_engine(transport, settings=FAST_SETTINGS):
    listener = RecordingListener()
    http = httpx.AsyncClient(transport=httpx.MockTransport(transport))
    engine = DeliveryEngine(settings, http_client=http, listeners=[listener])
    return engine, listener, http


async def _wait_for(predicate, timeout_s: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_notify_rejects_missing_config_and_disabled_event() -> None:
    transport = RecordingTransport()

    async def _main():
        engine, _, http = _make_engine(transport)
        async with engine:
            missing = await engine.notify("nobody", "moderation_ban", {})
            engine.registry.update_settings("no-primary", {})
            no_primary = await engine.notify("no-primary", "moderation_ban", {})
            engine.registry.set_webhook("t1", PRIMARY)
            disabled = await engine.notify("t1", "config_change", {})
            unknown = await engine.notify("t1", "not_a_type", {})
        await http.aclose()
        return missing, no_primary, disabled, unknown

    missing, no_primary, disabled, unknown = asyncio.run(_main())

    assert missing.accepted is False and missing.reason == RejectReason.CONFIG_MISSING
    assert no_primary.reason == RejectReason.CONFIG_MISSING
    assert disabled.reason == RejectReason.EVENT_DISABLED
    assert unknown.reason == RejectReason.EVENT_DISABLED
    assert transport.requests == []


def test_urgent_notification_is_delivered_immediately() -> None:
    transport = RecordingTransport()

    async def _main():
        engine, listener, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY, settings={"batch_interval_ms": 60_000})
            result = await engine.notify(
                "t1", "security_raid", {"description": "raid"}, NotificationPriority.URGENT
            )
            await _wait_for(lambda: listener.outcomes)
        await http.aclose()
        return result, listener

    result, listener = asyncio.run(_main())

    assert result.accepted is True
    assert result.batched is False
    assert result.priority == NotificationPriority.URGENT
    assert listener.outcomes[0].status == OutcomeStatus.DELIVERED
    assert listener.outcomes[0].envelope_id == result.envelope_id
    assert transport.bodies()[0]["embeds"][0]["title"] == "🚨 Raid Alert"


def test_normal_notifications_are_batched_into_one_request() -> None:
    transport = RecordingTransport()

    async def _main():
        engine, listener, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY, settings={"batch_interval_ms": 30})
            results = [
                await engine.notify("t1", "user_join", {"user": str(n)}) for n in range(3)
            ]
            assert engine.get_queue_stats().buffered_notifications == 3
            await _wait_for(lambda: listener.outcomes)
        await http.aclose()
        return results, listener

    results, listener = asyncio.run(_main())

    assert all(r.accepted and r.batched for r in results)
    assert len(transport.requests) == 1
    assert len(transport.bodies()[0]["embeds"]) == 3
    assert listener.outcomes[0].item_count == 3


def test_default_priority_from_settings_is_used() -> None:
    transport = RecordingTransport()

    async def _main():
        engine, _, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook(
                "t1", PRIMARY, settings={"default_priority": "urgent"}
            )
            result = await engine.notify("t1", "user_leave", {"user": "1"})
        await http.aclose()
        return result

    result = asyncio.run(_main())
    assert result.priority == NotificationPriority.URGENT
    assert result.batched is False


def test_failover_through_engine_reaches_backup() -> None:
    transport = RecordingTransport({"primary.example.com": 500})

    async def _main():
        engine, listener, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY)
            engine.registry.set_webhook("t1", BACKUP, is_backup=True)
            await engine.dispatcher.notify_moderation_action(
                "t1", "ban", "42", "7", "spam", priority=NotificationPriority.URGENT
            )
            await _wait_for(lambda: listener.outcomes)
        await http.aclose()
        return listener

    listener = asyncio.run(_main())

    hosts = [r.url.host for r in transport.requests]
    assert hosts == ["primary.example.com"] * 3 + ["backup.example.com"]
    assert listener.outcomes[0].status == OutcomeStatus.DELIVERED


def test_endpoint_snapshot_survives_config_deletion() -> None:
    """
    受付済みの通知は、その後に設定が削除されても受付時点の URL に配信されることを確認。
    """
    transport = RecordingTransport()

    async def _main():
        engine, listener, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY, settings={"batch_interval_ms": 30})
            result = await engine.notify("t1", "user_join", {"user": "1"})
            engine.registry.delete_config("t1")
            await _wait_for(lambda: listener.outcomes)
        await http.aclose()
        return result

    result = asyncio.run(_main())
    assert result.accepted is True
    assert [str(r.url) for r in transport.requests] == [PRIMARY]


def test_local_rate_limit_defers_direct_sends() -> None:
    transport = RecordingTransport()
    settings = WebhookEngineSettings(
        retry_base_delay_ms=1.0,
        retry_max_delay_ms=5.0,
        rate_limit_max_requests=2,
        rate_limit_window_ms=50.0,
    )

    async def _main():
        engine, listener, http = _make_engine(transport, settings)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY, settings={"batching_enabled": False})
            for n in range(5):
                await engine.notify("t1", "custom", {"description": str(n)})
            await _wait_for(lambda: len(listener.outcomes) == 5)
        await http.aclose()
        return listener

    listener = asyncio.run(_main())

    assert len(transport.requests) == 5
    assert all(o.status == OutcomeStatus.DELIVERED for o in listener.outcomes)
    assert all(o.attempts == 1 for o in listener.outcomes)


def test_tenants_are_isolated_from_each_others_failures() -> None:
    transport = RecordingTransport({"bad.example.com": 503})

    async def _main():
        engine, listener, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook("bad", "https://bad.example.com/hook")
            engine.registry.set_webhook("good", PRIMARY)
            await engine.notify("bad", "custom", {}, NotificationPriority.URGENT)
            await engine.notify("good", "custom", {}, NotificationPriority.URGENT)
            await _wait_for(lambda: len(listener.outcomes) == 2)
        await http.aclose()
        return listener

    listener = asyncio.run(_main())

    by_tenant = {o.tenant_id: o.status for o in listener.outcomes}
    assert by_tenant == {
        "good": OutcomeStatus.DELIVERED,
        "bad": OutcomeStatus.PERMANENT_FAILURE,
    }


def test_notify_requires_running_engine() -> None:
    async def _main():
        engine, _, http = _make_engine(RecordingTransport())
        with pytest.raises(EngineNotRunningError):
            await engine.notify("t1", "custom", {})
        await engine.start()
        await engine.stop()
        with pytest.raises(EngineNotRunningError):
            await engine.notify("t1", "custom", {})
        with pytest.raises(EngineNotRunningError):
            await engine.start()
        await http.aclose()

    asyncio.run(_main())


def test_stop_flushes_pending_batches() -> None:
    transport = RecordingTransport()

    async def _main():
        engine, listener, http = _make_engine(transport)
        await engine.start()
        engine.registry.set_webhook("t1", PRIMARY, settings={"batch_interval_ms": 60_000})
        await engine.notify("t1", "user_join", {"user": "1"})
        await engine.stop(flush_pending=True, timeout_s=2.0)
        await http.aclose()
        return listener

    listener = asyncio.run(_main())
    assert len(transport.requests) == 1
    assert len(listener.outcomes) == 1


def test_test_webhook_uses_registered_primary() -> None:
    transport = RecordingTransport()

    async def _main():
        engine, _, http = _make_engine(transport)
        async with engine:
            with pytest.raises(TenantNotFoundError):
                await engine.test_webhook("t1")
            engine.registry.set_webhook("t1", PRIMARY)
            result = await engine.test_webhook("t1")
        await http.aclose()
        return result

    result = asyncio.run(_main())
    assert result.status == DeliveryStatus.SUCCESS
    assert str(transport.requests[0].url) == PRIMARY


def test_queue_stats_and_clear_retry_queue() -> None:
    transport = RecordingTransport({"primary.example.com": 500})
    settings = WebhookEngineSettings(retry_base_delay_ms=60_000.0, retry_max_delay_ms=60_000.0)

    async def _main():
        engine, _, http = _make_engine(transport, settings)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY, settings={"batching_enabled": False})
            await engine.notify("t1", "custom", {})
            await _wait_for(lambda: engine.get_queue_stats().retry_queue_size == 1)
            stats = engine.get_queue_stats()
            cleared = engine.clear_retry_queue()
            after = engine.get_queue_stats()
        await http.aclose()
        return stats, cleared, after

    stats, cleared, after = asyncio.run(_main())
    assert stats.rate_limited_tenants == 1
    assert stats.batch_queue_size == 0
    assert cleared == 1
    assert after.retry_queue_size == 0


def test_unexpected_send_error_finishes_as_permanent_failure(caplog) -> None:
    """
    直接配信パスで想定外の例外（JSON 化できないペイロード）が起きても、
    エンベロープが PERMANENT_FAILURE で終わり結果が通知されることを確認。
    """
    transport = RecordingTransport()

    async def _main():
        engine, listener, http = _make_engine(transport)
        async with engine:
            engine.registry.set_webhook("t1", PRIMARY)
            result = await engine.notify(
                "t1", "custom", {"description": Decimal("1.5")}, NotificationPriority.URGENT
            )
            await _wait_for(lambda: listener.outcomes)
        await http.aclose()
        return result, listener

    result, listener = asyncio.run(_main())

    assert result.accepted is True
    assert len(listener.outcomes) == 1
    outcome = listener.outcomes[0]
    assert outcome.envelope_id == result.envelope_id
    assert outcome.status == OutcomeStatus.PERMANENT_FAILURE
    assert outcome.tenant_id == "t1"
    assert outcome.event_type == "custom"
    assert outcome.attempts == 1
    assert "internal error" in outcome.error
    assert transport.requests == []
    assert any(
        "Unexpected error while sending webhook" in r.getMessage() and r.exc_info
        for r in caplog.records
    )


def test_stop_timeout_bounds_slow_batch_flushes() -> None:
    """
    複数テナントのバッファを停止時にフラッシュしても、送信先が遅い場合は
    timeout_s で打ち切られ、各エンベロープが PERMANENT_FAILURE で通知されることを確認。
    """

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.0)
        return httpx.Response(200)

    async def _main():
        engine, listener, http = _make_engine(slow_handler)
        await engine.start()
        for tenant_id in ("a", "b", "c"):
            engine.registry.set_webhook(
                tenant_id, PRIMARY, settings={"batch_interval_ms": 60_000}
            )
            await engine.notify(tenant_id, "user_join", {"user": "1"})

        loop = asyncio.get_running_loop()
        before = loop.time()
        await engine.stop(flush_pending=True, timeout_s=0.1)
        elapsed = loop.time() - before
        await http.aclose()
        return listener, elapsed

    listener, elapsed = asyncio.run(_main())

    assert elapsed < 0.8
    assert sorted(o.tenant_id for o in listener.outcomes) == ["a", "b", "c"]
    assert all(o.status == OutcomeStatus.PERMANENT_FAILURE for o in listener.outcomes)
    assert all(o.error == "cancelled on shutdown" for o in listener.outcomes)


def test_stop_reports_each_pending_retry_as_failed() -> None:
    transport = RecordingTransport({"primary.example.com": 500})
    settings = WebhookEngineSettings(retry_base_delay_ms=60_000.0, retry_max_delay_ms=60_000.0)

    async def _main():
        engine, listener, http = _make_engine(transport, settings)
        await engine.start()
        for tenant_id in ("a", "b"):
            engine.registry.set_webhook(tenant_id, PRIMARY, settings={"batching_enabled": False})
            await engine.notify(tenant_id, "custom", {})
        await _wait_for(lambda: engine.get_queue_stats().retry_queue_size == 2)
        await engine.stop(timeout_s=0.05)
        await http.aclose()
        return listener

    listener = asyncio.run(_main())

    assert sorted(o.tenant_id for o in listener.outcomes) == ["a", "b"]
    for outcome in listener.outcomes:
        assert outcome.status == OutcomeStatus.PERMANENT_FAILURE
        assert outcome.attempts == 1
        assert outcome.error.startswith("dropped on shutdown")


def test_notifications_dropped_at_buffer_cap_are_reported() -> None:
    transport = RecordingTransport()
    settings = WebhookEngineSettings(
        retry_base_delay_ms=1.0,
        retry_max_delay_ms=5.0,
        rate_limit_max_requests=100,
        max_buffered_batches=1,
    )

    async def _main():
        engine, listener, http = _make_engine(transport, settings)
        await engine.start()
        engine.registry.set_webhook(
            "t1", PRIMARY, settings={"batch_interval_ms": 60_000, "max_batch_size": 1}
        )
        results = [await engine.notify("t1", "user_join", {"user": str(n)}) for n in range(3)]
        dropped = list(listener.outcomes)
        await engine.stop(timeout_s=2.0)
        await http.aclose()
        return results, dropped, listener

    results, dropped, listener = asyncio.run(_main())

    assert [o.envelope_id for o in dropped] == [r.envelope_id for r in results[:2]]
    assert all(o.status == OutcomeStatus.PERMANENT_FAILURE for o in dropped)
    assert all(o.attempts == 0 for o in dropped)
    assert len(transport.requests) == 1
    assert listener.outcomes[-1].status == OutcomeStatus.DELIVERED
    assert listener.outcomes[-1].envelope_id == results[2].envelope_id
