# backend/app/webhooks/__init__.py

"""
マルチテナント向け Webhook 通知配信エンジン。

テナントごとに登録された Webhook（primary / backup）へ通知を配信する。
レート制限・指数バックオフ付きリトライ・バックアップへのフェイルオーバー・
低緊急度通知のバッチ送信を 1 つの asyncio イベントループ上で行う。

構成:
- config: 環境変数からエンジン全体の設定を読む
- schemas: 共通スキーマ（エンベロープ・配信結果・設定など）
- registry: テナント設定の保持と TTL キャッシュ
- rate_limiter: テナント単位のスライディングウィンドウ制限
- client: 1 回の HTTP 配信と結果の分類
- retry_queue: リトライ待ちキューと drain ループ、フェイルオーバー
- batching: テナントごとのバッチ集約とフラッシュタイマー
- formatter: 通知ペイロードの整形
- dispatcher: notify() の受付と配信パスへの振り分け
- outcomes: 終端状態の通知（ログ出力・ファンアウト）
- engine: 上記を組み立てるライフサイクル管理
- router: /webhooks 管理用 API
"""
