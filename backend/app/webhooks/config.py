# backend/app/webhooks/config.py

"""
Webhook 配信エンジンの設定値読み出しモジュール。

- 環境変数からリトライ・レート制限・タイムアウト等のパラメータを取得する
- すべて任意項目。未設定の場合は下記のデフォルト値を使う
"""

from dataclasses import dataclass

from app.utils.config import get_env, get_env_float, get_env_int

from .schemas import RetryAfterUnit


@dataclass(frozen=True)
class WebhookEngineSettings:
    """
    DeliveryEngine 全体で共有する設定値。

    テナントごとの設定（バッチ間隔など）は WebhookSettings 側で持つ。
    """

    max_retry_attempts: int = 3
    retry_base_delay_ms: float = 2000.0
    retry_max_delay_ms: float = 30000.0
    retry_jitter_ratio: float = 0.0
    rate_limit_max_requests: int = 5
    rate_limit_window_ms: float = 1000.0
    delivery_timeout_ms: float = 10000.0
    default_retry_after_ms: float = 5000.0
    retry_after_unit: RetryAfterUnit = RetryAfterUnit.SECONDS
    config_cache_ttl_s: float = 300.0
    max_buffered_batches: int = 10
    bot_username: str = "Webhook Notifier"
    bot_avatar_url: str = ""


def _get_retry_after_unit() -> RetryAfterUnit:
    raw = get_env("WEBHOOK_RETRY_AFTER_UNIT", required=False)
    if raw is None:
        return RetryAfterUnit.SECONDS
    try:
        return RetryAfterUnit(raw.lower())
    except ValueError as exc:
        raise RuntimeError(
            f"Invalid value for env var WEBHOOK_RETRY_AFTER_UNIT: {raw!r} "
            "(expected 'seconds' or 'milliseconds')"
        ) from exc


def get_webhook_engine_settings() -> WebhookEngineSettings:
    """
    WebhookEngineSettings を環境変数から構築して返す。

    任意:
      - WEBHOOK_MAX_RETRY_ATTEMPTS（デフォルト 3）
      - WEBHOOK_RETRY_BASE_DELAY_MS / WEBHOOK_RETRY_MAX_DELAY_MS（2000 / 30000）
      - WEBHOOK_RETRY_JITTER_RATIO（0.0 = ジッターなし）
      - WEBHOOK_RATE_LIMIT_MAX_REQUESTS / WEBHOOK_RATE_LIMIT_WINDOW_MS（5 / 1000）
      - WEBHOOK_DELIVERY_TIMEOUT_MS（10000）
      - WEBHOOK_DEFAULT_RETRY_AFTER_MS（5000）
      - WEBHOOK_RETRY_AFTER_UNIT（seconds | milliseconds）
      - WEBHOOK_CONFIG_CACHE_TTL_S（300）
      - WEBHOOK_MAX_BUFFERED_BATCHES（10）
      - WEBHOOK_BOT_USERNAME / WEBHOOK_BOT_AVATAR_URL
    """
    defaults = WebhookEngineSettings()

    jitter = get_env_float(
        "WEBHOOK_RETRY_JITTER_RATIO", defaults.retry_jitter_ratio, minimum=0.0
    )
    if jitter > 1.0:
        raise RuntimeError(f"WEBHOOK_RETRY_JITTER_RATIO must be <= 1.0, got {jitter}")

    return WebhookEngineSettings(
        max_retry_attempts=get_env_int(
            "WEBHOOK_MAX_RETRY_ATTEMPTS", defaults.max_retry_attempts, minimum=1
        ),
        retry_base_delay_ms=get_env_float(
            "WEBHOOK_RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms, minimum=0.0
        ),
        retry_max_delay_ms=get_env_float(
            "WEBHOOK_RETRY_MAX_DELAY_MS", defaults.retry_max_delay_ms, minimum=0.0
        ),
        retry_jitter_ratio=jitter,
        rate_limit_max_requests=get_env_int(
            "WEBHOOK_RATE_LIMIT_MAX_REQUESTS", defaults.rate_limit_max_requests, minimum=1
        ),
        rate_limit_window_ms=get_env_float(
            "WEBHOOK_RATE_LIMIT_WINDOW_MS", defaults.rate_limit_window_ms, minimum=1.0
        ),
        delivery_timeout_ms=get_env_float(
            "WEBHOOK_DELIVERY_TIMEOUT_MS", defaults.delivery_timeout_ms, minimum=1.0
        ),
        default_retry_after_ms=get_env_float(
            "WEBHOOK_DEFAULT_RETRY_AFTER_MS", defaults.default_retry_after_ms, minimum=0.0
        ),
        retry_after_unit=_get_retry_after_unit(),
        config_cache_ttl_s=get_env_float(
            "WEBHOOK_CONFIG_CACHE_TTL_S", defaults.config_cache_ttl_s, minimum=0.0
        ),
        max_buffered_batches=get_env_int(
            "WEBHOOK_MAX_BUFFERED_BATCHES", defaults.max_buffered_batches, minimum=1
        ),
        bot_username=get_env(
            "WEBHOOK_BOT_USERNAME", defaults.bot_username, required=False
        ),
        bot_avatar_url=get_env(
            "WEBHOOK_BOT_AVATAR_URL", defaults.bot_avatar_url, required=False
        ),
    )
