# backend/app/webhooks/outcomes.py

"""
配信結果（DeliveryOutcome）の通知インターフェースと実装。

notify() は配信完了を待たずに返るため、呼び出し側が最終結果を知りたい場合は
DeliveryOutcomeListener を登録しておく。

- LoggingOutcomeListener: 終端状態をログに記録する（常に登録される）
- CompositeOutcomeListener: 複数 Listener にファンアウトする
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol

from .schemas import DeliveryOutcome, OutcomeStatus

logger = logging.getLogger(__name__)


class DeliveryOutcomeListener(Protocol):
    """
    終端状態の通知を受け取る最小インターフェース。

    同期関数として呼ばれるので、重い処理はタスク化すること。
    """

    def on_outcome(self, outcome: DeliveryOutcome) -> None:  # pragma: no cover - Protocol
        ...


class LoggingOutcomeListener:
    """
    DeliveryOutcome を終端状態に応じたログレベルで出力する Listener。

    - DELIVERED → INFO
    - NON_RETRYABLE → WARNING
    - PERMANENT_FAILURE → ERROR
    """

    def __init__(self, logger_: Optional[logging.Logger] = None) -> None:
        self._logger = logger_ or logger

    def on_outcome(self, outcome: DeliveryOutcome) -> None:
        role = outcome.endpoint_role.value if outcome.endpoint_role else "-"
        text = (
            f"[{outcome.status.value}] tenant={outcome.tenant_id} "
            f"event={outcome.event_type} attempts={outcome.attempts} "
            f"endpoint={role} items={outcome.item_count} envelope={outcome.envelope_id}"
        )
        if outcome.error:
            text += f" error={outcome.error}"

        if outcome.status == OutcomeStatus.PERMANENT_FAILURE:
            self._logger.error(text)
        elif outcome.status == OutcomeStatus.NON_RETRYABLE:
            self._logger.warning(text)
        else:
            self._logger.info(text)


class CompositeOutcomeListener:
    """
    複数の DeliveryOutcomeListener に結果をファンアウトする。

    1 つの Listener が例外を投げても、残りの Listener と配信処理は止めない。
    """

    def __init__(self, listeners: Iterable[DeliveryOutcomeListener] = ()) -> None:
        self._listeners: List[DeliveryOutcomeListener] = list(listeners)

    def add(self, listener: DeliveryOutcomeListener) -> None:
        self._listeners.append(listener)

    def remove(self, listener: DeliveryOutcomeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def on_outcome(self, outcome: DeliveryOutcome) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_outcome(outcome)
            except Exception:  # noqa: BLE001 - 結果通知は配信処理を止めない
                logger.exception("Outcome listener failed. Continuing with others.")
