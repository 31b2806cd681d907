# backend/app/webhooks/client.py

"""
Webhook エンドポイントへの HTTP 配信を担当するクライアントモジュール。

1 回の POST を行い、結果を DeliveryStatus のいずれか 1 つに分類して返す。
リトライ／フェイルオーバーの判断はこの分類だけを根拠に RetryQueue 側で行う。
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from .schemas import DeliveryResult, DeliveryStatus, RetryAfterUnit

logger = logging.getLogger(__name__)

_MESSAGE_ID_HEADERS = ("x-message-id", "x-delivery-id")

TEST_PAYLOAD: Dict[str, Any] = {
    "content": "Webhook connection test successful!",
    "embeds": [
        {
            "title": "Webhook Test",
            "description": "Your webhook is properly configured and ready to receive notifications.",
            "color": 0x00FF88,
        }
    ],
}


def _parse_http_date(text: str, now: Optional[datetime]) -> Optional[float]:
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds() * 1000.0, 0.0)


def parse_retry_after(
    value: Any,
    *,
    unit: RetryAfterUnit = RetryAfterUnit.SECONDS,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """
    Retry-After 相当の値をミリ秒に正規化する。

    - 数値（文字列含む）は unit に従って解釈する
    - HTTP-date 形式は現在時刻との差分にする
    - 解釈できない・負値の場合は None
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return _parse_http_date(text, now)

    if number < 0 or not math.isfinite(number):
        return None
    if unit == RetryAfterUnit.SECONDS:
        return number * 1000.0
    return number


def _extract_message_id(response: httpx.Response) -> Optional[str]:
    for header in _MESSAGE_ID_HEADERS:
        value = response.headers.get(header)
        if value:
            return value

    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("id") is not None:
        return str(body["id"])
    return None


def _retry_after_from_response(
    response: httpx.Response,
    unit: RetryAfterUnit,
) -> Optional[float]:
    hint = parse_retry_after(response.headers.get("retry-after"), unit=unit)
    if hint is not None:
        return hint

    # ヘッダがない場合は JSON ボディの retry_after を見る（チャット系 Webhook の慣習）
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return parse_retry_after(body.get("retry_after"), unit=unit)
    return None


def classify_response(
    response: httpx.Response,
    *,
    retry_after_unit: RetryAfterUnit = RetryAfterUnit.SECONDS,
    default_retry_after_ms: float = 5000.0,
) -> DeliveryResult:
    """
    HTTP レスポンスを DeliveryResult に分類する。

    - 2xx → SUCCESS（message_id をヘッダ / JSON ボディから抽出）
    - 429 → RATE_LIMITED（Retry-After があれば尊重、なければ default_retry_after_ms）
    - 5xx → SERVER_ERROR
    - それ以外（4xx, 1xx/3xx）→ CLIENT_ERROR（リトライしない）
    """
    code = response.status_code

    if 200 <= code < 300:
        return DeliveryResult(
            status=DeliveryStatus.SUCCESS,
            status_code=code,
            message_id=_extract_message_id(response),
        )

    if code == 429:
        hint = _retry_after_from_response(response, retry_after_unit)
        return DeliveryResult(
            status=DeliveryStatus.RATE_LIMITED,
            status_code=code,
            retry_after_ms=hint if hint is not None else default_retry_after_ms,
            error="HTTP 429",
        )

    if code >= 500:
        return DeliveryResult(
            status=DeliveryStatus.SERVER_ERROR,
            status_code=code,
            error=f"HTTP {code}",
        )

    return DeliveryResult(
        status=DeliveryStatus.CLIENT_ERROR,
        status_code=code,
        error=f"HTTP {code}: {response.text[:500]}",
    )


class WebhookClient:
    """
    Webhook 配信用の薄い非同期 HTTP クライアント。

    - httpx.AsyncClient を注入可能（テストでは httpx.MockTransport を使う）
    - 注入しなかった場合は自前で生成し、aclose() で閉じる
    - deliver() は配信結果を例外ではなく DeliveryResult で返す
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        timeout_ms: float = 10000.0,
        default_retry_after_ms: float = 5000.0,
        retry_after_unit: RetryAfterUnit = RetryAfterUnit.SECONDS,
        user_agent: str = "webhook-notifier/1.0",
    ) -> None:
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout_ms = float(timeout_ms)
        self._default_retry_after_ms = float(default_retry_after_ms)
        self._retry_after_unit = retry_after_unit
        self._user_agent = user_agent

    @property
    def timeout_ms(self) -> float:
        return self._timeout_ms

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
        }

    async def deliver(
        self,
        url: str,
        payload: Any,
        timeout_ms: Optional[float] = None,
    ) -> DeliveryResult:
        """
        payload を JSON として url に POST し、結果を分類して返す。

        :param url: 送信先 URL
        :param payload: JSON シリアライズ可能なボディ
        :param timeout_ms: 省略時はクライアントのデフォルト（10秒）
        """
        timeout_s = (timeout_ms if timeout_ms is not None else self._timeout_ms) / 1000.0
        started = time.monotonic()

        try:
            response = await self._http.post(
                url,
                json=payload,
                headers=self._build_headers(),
                timeout=timeout_s,
            )
        except httpx.TimeoutException as exc:
            return DeliveryResult(
                status=DeliveryStatus.NETWORK_ERROR,
                error=f"Request timeout after {timeout_s:.1f}s ({type(exc).__name__})",
                elapsed_ms=(time.monotonic() - started) * 1000.0,
            )
        except httpx.RequestError as exc:  # 接続エラー・DNS エラーなど
            return DeliveryResult(
                status=DeliveryStatus.NETWORK_ERROR,
                error=f"{type(exc).__name__}: {exc}",
                elapsed_ms=(time.monotonic() - started) * 1000.0,
            )
        except httpx.InvalidURL as exc:
            return DeliveryResult(
                status=DeliveryStatus.CLIENT_ERROR,
                error=f"Invalid URL: {exc}",
            )

        result = classify_response(
            response,
            retry_after_unit=self._retry_after_unit,
            default_retry_after_ms=self._default_retry_after_ms,
        )
        result.elapsed_ms = (time.monotonic() - started) * 1000.0

        if result.ok:
            logger.debug("Webhook delivered: status_code=%s", result.status_code)
        else:
            logger.debug(
                "Webhook delivery attempt failed: status=%s status_code=%s",
                result.status.value,
                result.status_code,
            )
        return result

    async def test_webhook(self, url: str) -> DeliveryResult:
        """接続確認用の固定ペイロードを送る。"""
        payload = dict(TEST_PAYLOAD)
        payload["embeds"] = [
            {**TEST_PAYLOAD["embeds"][0], "timestamp": datetime.now(timezone.utc).isoformat()}
        ]
        return await self.deliver(url, payload)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
