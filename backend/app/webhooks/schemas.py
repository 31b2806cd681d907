# backend/app/webhooks/schemas.py

"""
Webhook 配信エンジンで共有するスキーマ定義。

- 通知種別・優先度・配信結果などの Enum
- テナントごとの Webhook 設定（TenantConfig / WebhookSettings）
- 配信 1 単位を表す NotificationEnvelope
- 1 回の HTTP 配信結果（DeliveryResult）と終端状態（DeliveryOutcome）
- /webhooks ルーター用のリクエスト・レスポンスモデル

※ Webhook URL にはトークンが含まれることが多いため、
  ログ出力時は URL をそのまま出さないこと（テナント ID で識別する）。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationPriority(str, Enum):
    """
    通知の優先度。

    URGENT のみがバッチングをバイパスする（NORMAL / LOW は常にバッチ対象）。
    """

    URGENT = "urgent"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """RetryQueue の並び順に使う値（小さいほど先）。"""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    NotificationPriority.URGENT: 0,
    NotificationPriority.NORMAL: 1,
    NotificationPriority.LOW: 2,
}


class NotificationType(str, Enum):
    """通知イベントの種別。"""

    MODERATION_BAN = "moderation_ban"
    MODERATION_KICK = "moderation_kick"
    MODERATION_MUTE = "moderation_mute"
    MODERATION_WARN = "moderation_warn"
    SECURITY_SPAM = "security_spam"
    SECURITY_RAID = "security_raid"
    USER_JOIN = "user_join"
    USER_LEAVE = "user_leave"
    CONFIG_CHANGE = "config_change"
    DAILY_SUMMARY = "daily_summary"
    CUSTOM = "custom"


# バッチで複数種別をまとめた場合の event_type
BATCH_EVENT_TYPE = "batch"


def _default_enabled_events() -> Dict[str, bool]:
    enabled = {t.value: True for t in NotificationType}
    # 設定変更通知はノイズになりやすいのでデフォルト無効
    enabled[NotificationType.CONFIG_CHANGE.value] = False
    return enabled


class DeliveryStatus(str, Enum):
    """
    1 回の配信試行の分類結果。

    RetryQueue はこの分類だけを見てリトライ／破棄を判断する。
    """

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    CLIENT_ERROR = "client_error"


_RETRYABLE_STATUSES = frozenset(
    {
        DeliveryStatus.RATE_LIMITED,
        DeliveryStatus.SERVER_ERROR,
        DeliveryStatus.NETWORK_ERROR,
    }
)


class OutcomeStatus(str, Enum):
    """エンベロープの終端状態。"""

    DELIVERED = "delivered"
    NON_RETRYABLE = "non_retryable"
    PERMANENT_FAILURE = "permanent_failure"


class EndpointRole(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"


class RejectReason(str, Enum):
    """notify() が同期的に受付拒否する理由。"""

    CONFIG_MISSING = "config_missing"
    EVENT_DISABLED = "event_disabled"


class RetryAfterUnit(str, Enum):
    """429 応答の Retry-After 値の単位（エンドポイントの慣習次第）。"""

    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"


class WebhookSettings(BaseModel):
    """
    テナントごとの配信設定。

    enabled_events に存在しないイベント種別は「無効」として扱う。
    """

    enabled_events: Dict[str, bool] = Field(
        default_factory=_default_enabled_events,
        description="イベント種別 → 有効/無効",
    )
    default_priority: NotificationPriority = Field(
        NotificationPriority.NORMAL,
        description="notify() で priority 未指定時に使う優先度",
    )
    batching_enabled: bool = Field(True, description="低緊急度の通知をまとめて送るか")
    batch_interval_ms: int = Field(5000, gt=0, description="バッチのフラッシュ間隔（ミリ秒）")
    max_batch_size: int = Field(10, gt=0, description="1 回のフラッシュでまとめる最大件数")
    include_embeds: bool = Field(True, description="False の場合はプレーンテキストで送る")
    custom_template: Optional[Dict[str, Any]] = Field(
        None,
        description="embed に上書き適用するテンプレート（{{field}} を data で置換）",
    )

    def is_event_enabled(self, event_type: str) -> bool:
        return bool(self.enabled_events.get(event_type, False))


class TenantConfig(BaseModel):
    """テナント 1 件分の Webhook 設定。"""

    tenant_id: str
    primary_endpoint: Optional[str] = None
    backup_endpoint: Optional[str] = None
    settings: WebhookSettings = Field(default_factory=WebhookSettings)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_primary(self) -> bool:
        return bool(self.primary_endpoint)


class TenantWebhookSummary(BaseModel):
    """一覧表示用のサマリ（URL 自体は含めない）。"""

    tenant_id: str
    has_primary: bool
    has_backup: bool
    settings: WebhookSettings


class NotificationEnvelope(BaseModel):
    """
    通知 1 件分の配信単位。

    primary_endpoint / backup_endpoint は受付時点のスナップショット。
    設定が削除されても、受付済みのエンベロープは最後まで配信を試みる。
    """

    envelope_id: str = Field(default_factory=lambda: uuid4().hex)
    tenant_id: str
    event_type: str
    payload: Any
    priority: NotificationPriority = NotificationPriority.NORMAL
    created_at: datetime = Field(default_factory=_utcnow)
    primary_endpoint: str
    backup_endpoint: Optional[str] = None
    item_count: int = Field(1, ge=1, description="バッチでまとめた通知件数")


class DeliveryResult(BaseModel):
    """1 回の HTTP 配信試行の結果。"""

    status: DeliveryStatus
    status_code: Optional[int] = None
    message_id: Optional[str] = None
    retry_after_ms: Optional[float] = None
    error: Optional[str] = None
    elapsed_ms: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.status in _RETRYABLE_STATUSES


class DeliveryOutcome(BaseModel):
    """エンベロープが終端状態に到達したことを表すイベント。"""

    envelope_id: str
    tenant_id: str
    event_type: str
    status: OutcomeStatus
    attempts: int = Field(..., ge=0, description="primary + backup の試行回数合計")
    endpoint_role: Optional[EndpointRole] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    item_count: int = 1
    finished_at: datetime = Field(default_factory=_utcnow)


class RateLimitDecision(BaseModel):
    admitted: bool
    retry_after_ms: float = 0.0


class NotifyResult(BaseModel):
    """
    notify() の戻り値。

    accepted=True は「パイプラインに受け付けた」ことだけを意味し、
    配信完了は DeliveryOutcome で通知される。
    """

    accepted: bool
    reason: Optional[RejectReason] = None
    envelope_id: Optional[str] = None
    priority: Optional[NotificationPriority] = None
    batched: bool = False


class QueueStats(BaseModel):
    retry_queue_size: int = Field(..., ge=0)
    retry_in_flight: int = Field(..., ge=0)
    is_draining: bool
    batch_queue_size: int = Field(..., ge=0, description="バッファを持つテナント数")
    buffered_notifications: int = Field(..., ge=0)
    rate_limited_tenants: int = Field(..., ge=0, description="レート制限ウィンドウを保持しているテナント数")


# ---- /webhooks ルーター用 ----------------------------------------------


class WebhookSettingsUpdate(BaseModel):
    """PATCH /webhooks/{tenant_id}/settings の部分更新ボディ。"""

    enabled_events: Optional[Dict[str, bool]] = None
    default_priority: Optional[NotificationPriority] = None
    batching_enabled: Optional[bool] = None
    batch_interval_ms: Optional[int] = Field(None, gt=0)
    max_batch_size: Optional[int] = Field(None, gt=0)
    include_embeds: Optional[bool] = None
    custom_template: Optional[Dict[str, Any]] = None


class SetWebhookRequest(BaseModel):
    url: str = Field(..., description="Webhook の送信先 URL（http/https）")
    is_backup: bool = Field(False, description="True の場合はバックアップ URL として登録")
    settings: Optional[WebhookSettingsUpdate] = None


class EventToggleRequest(BaseModel):
    enabled: bool


class NotifyRequest(BaseModel):
    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[NotificationPriority] = None


class WebhookTestRequest(BaseModel):
    url: Optional[str] = Field(None, description="未指定なら登録済みの primary を使う")


class WebhookTestResponse(BaseModel):
    success: bool
    status: DeliveryStatus
    status_code: Optional[int] = None
    error: Optional[str] = None


class TenantListResponse(BaseModel):
    tenants: List[TenantWebhookSummary]
    count: int
