# backend/transfer_notify/main.py

"""
バックエンドアプリケーションのエントリーポイント。

- 通知ルールエンジンのエンドポイント (/notifications/*)
- ヘルスチェックエンドポイント (/health)
"""

from fastapi import FastAPI

from transfer_notify.notifications.router import router as notifications_router


def create_app() -> FastAPI:
    """
    FastAPI アプリケーションファクトリ。
    """
    app = FastAPI(title="Transfer Notification Backend")

    # ルーター登録
    app.include_router(notifications_router)

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
