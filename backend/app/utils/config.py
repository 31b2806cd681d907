# backend/app/utils/config.py

"""
環境変数読み取り用のユーティリティ。

Webhook 配信エンジンの設定（リトライ回数・レート制限・タイムアウト等）は
すべてここのヘルパー経由で読み出す。
"""

import os
from typing import Optional


class EnvVarMissingError(RuntimeError):
    """必須環境変数が設定されていない場合に投げる例外。"""

    def __init__(self, name: str) -> None:
        super().__init__(f"Required environment variable '{name}' is not set.")
        self.name = name


def get_env(
    name: str,
    default: Optional[str] = None,
    *,
    required: bool = True,
) -> Optional[str]:
    """
    環境変数を取得するヘルパー。

    :param name: 環境変数名
    :param default: デフォルト値（required=False の場合のみ使用）
    :param required: True の場合、未設定なら例外を投げる
    :return: 文字列値
    """
    value = os.getenv(name)

    if value is None or value.strip() == "":
        if required:
            raise EnvVarMissingError(name)
        return default

    return value.strip()


def get_env_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    """
    整数値の環境変数を取得する。

    - 未設定の場合は default
    - パース不能・minimum 未満の場合は RuntimeError
    """
    raw = get_env(name, required=False)
    if raw is None:
        return default

    try:
        value = int(raw)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(
            f"Invalid integer value for env var {name}: {raw!r}"
        ) from exc

    if minimum is not None and value < minimum:
        raise RuntimeError(
            f"Env var {name} must be >= {minimum}, got {value}"
        )
    return value


def get_env_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    """
    浮動小数点値の環境変数を取得する。ルールは get_env_int と同じ。
    """
    raw = get_env(name, required=False)
    if raw is None:
        return default

    try:
        value = float(raw)
    except ValueError as exc:  # noqa: TRY003
        raise RuntimeError(
            f"Invalid float value for env var {name}: {raw!r}"
        ) from exc

    if minimum is not None and value < minimum:
        raise RuntimeError(
            f"Env var {name} must be >= {minimum}, got {value}"
        )
    return value
