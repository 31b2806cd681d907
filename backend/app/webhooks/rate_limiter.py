# backend/app/webhooks/rate_limiter.py

"""
テナント単位のスライディングウィンドウ型レート制限。

直近 window_ms の間に admit したタイムスタンプを保持し、
max_requests 件に達していれば拒否する。固定バケットではないため、
どの連続した window_ms 区間を取っても max_requests 件を超えない。
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from .schemas import RateLimitDecision


def monotonic_ms() -> float:
    """エンジン内部で使う単調増加クロック（ミリ秒）。"""
    return time.monotonic() * 1000.0


class SlidingWindowRateLimiter:
    """
    テナントごとの送信回数を制限する。

    同じクロック・同じ入力列に対しては常に同じ結果を返す（テスト用に clock を注入可能）。
    """

    def __init__(
        self,
        *,
        max_requests: int = 5,
        window_ms: float = 1000.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        self._max_requests = int(max_requests)
        self._window_ms = float(window_ms)
        self._clock = clock or monotonic_ms
        self._windows: Dict[str, Deque[float]] = {}

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_ms(self) -> float:
        return self._window_ms

    @property
    def tracked_tenants(self) -> int:
        """ウィンドウ内に送信履歴を持つテナント数。"""
        return len(self._windows)

    # ---- 内部ヘルパー -------------------------------------------------

    def _prune(self, tenant_id: str, now: float) -> Deque[float]:
        window = self._windows.get(tenant_id)
        if window is None:
            return deque()
        while window and now - window[0] >= self._window_ms:
            window.popleft()
        if not window:
            del self._windows[tenant_id]
        return window

    # ---- 公開 API ------------------------------------------------------

    def admit(self, tenant_id: str, now_ms: Optional[float] = None) -> RateLimitDecision:
        """
        送信してよいかを判定し、許可する場合はその時刻を記録する。

        拒否時の retry_after_ms は「ウィンドウ内で最も古い送信がウィンドウ外に出るまで」の時間。
        """
        now = self._clock() if now_ms is None else float(now_ms)
        window = self._prune(tenant_id, now)

        if len(window) >= self._max_requests:
            retry_after = self._window_ms - (now - window[0])
            return RateLimitDecision(admitted=False, retry_after_ms=max(retry_after, 1.0))

        window.append(now)
        self._windows[tenant_id] = window
        return RateLimitDecision(admitted=True, retry_after_ms=0.0)

    def current_count(self, tenant_id: str, now_ms: Optional[float] = None) -> int:
        """ウィンドウ内の送信数（記録はしない）。"""
        now = self._clock() if now_ms is None else float(now_ms)
        return len(self._prune(tenant_id, now))

    def reset(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._windows.clear()
        else:
            self._windows.pop(tenant_id, None)
