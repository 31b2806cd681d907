# backend/app/main.py

"""
バックエンドアプリケーションのエントリーポイント。

主な責務:
- /webhooks 管理エンドポイントを公開する
- DeliveryEngine の起動・停止をアプリのライフサイクルに合わせる
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.webhooks.engine import DeliveryEngine
from app.webhooks.router import router as webhooks_router


def create_app(engine: Optional[DeliveryEngine] = None) -> FastAPI:
    """
    FastAPI アプリケーションファクトリ。

    - Webhook 管理エンドポイント (/webhooks)
    - ヘルスチェックエンドポイント (/health)

    :param engine: 省略時は起動時に環境変数の設定で DeliveryEngine を生成する
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        delivery_engine = engine or DeliveryEngine()
        await delivery_engine.start()
        app.state.delivery_engine = delivery_engine
        try:
            yield
        finally:
            await delivery_engine.stop()
            app.state.delivery_engine = None

    app = FastAPI(title="Webhook Notification Backend", lifespan=lifespan)

    # ルーター登録
    app.include_router(webhooks_router)

    @app.get("/health", tags=["health"])
    def health_check() -> dict:
        """
        簡易ヘルスチェックエンドポイント。
        モニタリングや動作確認用。
        """
        return {"status": "ok"}

    return app


# uvicorn 実行時のエントリーポイント
app = create_app()
