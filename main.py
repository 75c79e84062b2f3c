import logging
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from chatsync.core.config import settings
from chatsync.core.errors import ChatEngineError
from chatsync.core.metrics import add_metrics_middleware
from chatsync.core.monitoring import HealthChecker, LoggingConfig
from chatsync.services.engine import ChatEngine

from chatsync.api import chat_api, chat_ws

logger = logging.getLogger(__name__)


def create_app(engine: Optional[ChatEngine] = None) -> FastAPI:
    # 设置日志
    LoggingConfig.setup_logging()

    engine = engine or ChatEngine.from_settings(settings)

    app = FastAPI(
        title="chatsync - Conversation & Message Sync",
        version=settings.VERSION,
        docs_url="/docs" if settings.LOG_LEVEL == "DEBUG" else None,
        redoc_url="/redoc" if settings.LOG_LEVEL == "DEBUG" else None,
    )
    app.state.engine = engine

    if settings.ENABLE_CORS:
        origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",")]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
        )

    if settings.ENABLE_METRICS:
        add_metrics_middleware(app)

    @app.exception_handler(ChatEngineError)
    async def chat_engine_error_handler(request: Request, exc: ChatEngineError):
        if exc.status_code >= 500:
            logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    # 健康检查端点
    @app.get("/health")
    async def health():
        return await HealthChecker.comprehensive_health_check(engine.session_factory)

    @app.get("/healthz")
    async def simple_health_check():
        """简单健康检查（K8s风格）"""
        return {"status": "ok"}

    @app.get("/ready")
    async def readiness_check():
        db_status = await HealthChecker.check_database(engine.session_factory)
        if db_status["status"] != "healthy":
            return Response(status_code=503, content="Database not ready")
        return {"status": "ready"}

    # Prometheus指标端点
    @app.get("/metrics")
    async def metrics():
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(chat_api.router, prefix="/api/chat", tags=["chat"])
    app.include_router(chat_ws.router, prefix="/api/chat", tags=["chat-realtime"])

    @app.get("/")
    def root():
        return {
            "service": "chatsync",
            "version": settings.VERSION,
            "status": "running",
        }

    @app.on_event("shutdown")
    async def on_shutdown():
        """优雅关闭"""
        logger.info("Shutting down chatsync...")
        await engine.close()
        logger.info("chatsync stopped.")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
