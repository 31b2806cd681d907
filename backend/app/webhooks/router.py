# backend/app/webhooks/router.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from .engine import DeliveryEngine, EngineNotRunningError
from .registry import InvalidWebhookUrlError, TenantNotFoundError
from .schemas import (
    EventToggleRequest,
    NotifyRequest,
    NotifyResult,
    QueueStats,
    SetWebhookRequest,
    TenantConfig,
    TenantListResponse,
    WebhookSettings,
    WebhookSettingsUpdate,
    WebhookTestRequest,
    WebhookTestResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_delivery_engine(request: Request) -> DeliveryEngine:
    """
    app.state に載っている DeliveryEngine を返す。

    テストでは app.dependency_overrides で差し替えてもよい。
    """
    engine = getattr(request.app.state, "delivery_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook delivery engine is not available",
        )
    return engine


# NOTE: 固定パスは /{tenant_id} より先に宣言しておく


@router.get("/stats", response_model=QueueStats)
async def get_queue_stats(engine: DeliveryEngine = Depends(get_delivery_engine)) -> QueueStats:
    return engine.get_queue_stats()


@router.delete("/retry-queue")
async def clear_retry_queue(engine: DeliveryEngine = Depends(get_delivery_engine)) -> dict:
    return {"cleared": engine.clear_retry_queue()}


@router.get("", response_model=TenantListResponse)
async def list_webhooks(
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> TenantListResponse:
    tenants = engine.registry.list_configs()
    return TenantListResponse(tenants=tenants, count=len(tenants))


@router.get("/{tenant_id}", response_model=TenantConfig)
async def get_webhook(
    tenant_id: str,
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> TenantConfig:
    config = engine.registry.get_config(tenant_id)
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook config not found for tenant: {tenant_id}",
        )
    return config


@router.put("/{tenant_id}", response_model=TenantConfig)
async def set_webhook(
    tenant_id: str,
    payload: SetWebhookRequest,
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> TenantConfig:
    settings = payload.settings.model_dump(exclude_none=True) if payload.settings else None
    try:
        return engine.registry.set_webhook(
            tenant_id,
            payload.url,
            is_backup=payload.is_backup,
            settings=settings,
        )
    except InvalidWebhookUrlError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.delete("/{tenant_id}")
async def delete_webhook(
    tenant_id: str,
    backup: bool = False,
    delete_all: bool = Query(False, alias="all"),
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> dict:
    if delete_all:
        deleted = engine.registry.delete_config(tenant_id)
    else:
        deleted = engine.registry.delete_webhook(tenant_id, is_backup=backup)

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook config not found for tenant: {tenant_id}",
        )
    return {"deleted": True, "tenant_id": tenant_id}


@router.patch("/{tenant_id}/settings", response_model=WebhookSettings)
async def update_settings(
    tenant_id: str,
    payload: WebhookSettingsUpdate,
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> WebhookSettings:
    return engine.registry.update_settings(tenant_id, payload.model_dump(exclude_none=True))


@router.put("/{tenant_id}/events/{event_type}")
async def set_event_enabled(
    tenant_id: str,
    event_type: str,
    payload: EventToggleRequest,
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> dict:
    if not engine.registry.set_event_enabled(tenant_id, event_type, payload.enabled):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown event type: {event_type}",
        )
    return {"event_type": event_type, "enabled": payload.enabled}


@router.post("/{tenant_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    tenant_id: str,
    payload: Optional[WebhookTestRequest] = None,
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> WebhookTestResponse:
    url = payload.url if payload else None
    try:
        result = await engine.test_webhook(tenant_id, url)
    except InvalidWebhookUrlError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TenantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return WebhookTestResponse(
        success=result.ok,
        status=result.status,
        status_code=result.status_code,
        error=result.error,
    )


@router.post("/{tenant_id}/notify", response_model=NotifyResult)
async def notify(
    tenant_id: str,
    payload: NotifyRequest,
    engine: DeliveryEngine = Depends(get_delivery_engine),
) -> NotifyResult:
    """
    通知を受け付ける。

    accepted=False（設定なし・イベント無効）も 200 で返す。
    """
    try:
        return await engine.notify(tenant_id, payload.event_type, payload.data, payload.priority)
    except EngineNotRunningError as exc:
        logger.warning("Notify rejected for tenant %s: %s", tenant_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
