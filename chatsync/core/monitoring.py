"""监控和健康检查"""

import asyncio
import logging
import logging.config
import os
import time
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal

logger = logging.getLogger(__name__)


class HealthChecker:
    """健康检查器"""

    @staticmethod
    async def check_database(session_factory: Optional[Callable] = None) -> Dict[str, Any]:
        """检查数据库连接"""
        db = (session_factory or SessionLocal)()
        try:
            start_time = time.time()
            result = await asyncio.to_thread(lambda: db.execute(text("SELECT 1")).fetchone())
            duration = time.time() - start_time
            return {
                "status": "healthy" if result else "unhealthy",
                "response_time": duration,
                "details": "Database connection successful" if result else "Database query failed",
            }
        except SQLAlchemyError as e:
            return {
                "status": "unhealthy",
                "response_time": None,
                "details": f"Database connection failed: {str(e)}",
            }
        finally:
            db.close()

    @staticmethod
    async def check_redis(url: Optional[str] = None) -> Dict[str, Any]:
        """检查Redis连接"""
        url = url or settings.REDIS_URL
        if not url:
            return {
                "status": "disabled",
                "response_time": None,
                "details": "Redis not configured",
            }

        r = redis.from_url(url)
        try:
            start_time = time.time()
            pong = await r.ping()
            duration = time.time() - start_time
            return {
                "status": "healthy" if pong else "unhealthy",
                "response_time": duration,
                "details": "Redis connection successful" if pong else "Redis ping failed",
            }
        except (redis.RedisError, OSError) as e:
            return {
                "status": "unhealthy",
                "response_time": None,
                "details": f"Redis connection failed: {str(e)}",
            }
        finally:
            await r.aclose()

    @staticmethod
    async def comprehensive_health_check(session_factory: Optional[Callable] = None) -> Dict[str, Any]:
        """综合健康检查"""
        checks = {
            "database": await HealthChecker.check_database(session_factory),
            "redis": await HealthChecker.check_redis(),
        }

        overall_status = "healthy"
        for check in checks.values():
            if check["status"] == "unhealthy":
                overall_status = "unhealthy"
                break

        return {
            "status": overall_status,
            "timestamp": time.time(),
            "checks": checks,
            "version": settings.VERSION,
        }


class LoggingConfig:
    """日志配置"""

    @staticmethod
    def build_config(level: str = "INFO", log_dir: Optional[str] = None) -> Dict[str, Any]:
        handlers: Dict[str, Any] = {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "simple",
                "stream": "ext://sys.stdout",
            }
        }
        root_handlers = ["console"]
        if log_dir:
            handlers["file"] = {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "DEBUG",
                "formatter": "detailed",
                "filename": os.path.join(log_dir, "chatsync.log"),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
            }
            handlers["error_file"] = {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": "json",
                "filename": os.path.join(log_dir, "error.log"),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 10,
            }
            root_handlers += ["file", "error_file"]

        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "detailed": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s (%(filename)s:%(lineno)d)"
                },
                "simple": {"format": "%(levelname)s: %(name)s: %(message)s"},
                "json": {
                    "format": '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "line": %(lineno)d}'
                },
            },
            "handlers": handlers,
            "root": {"level": level, "handlers": root_handlers},
            "loggers": {
                "chatsync": {"level": level, "propagate": True},
                "uvicorn.access": {"level": "INFO", "propagate": True},
            },
        }

    @staticmethod
    def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
        """设置日志"""
        level = (level or settings.LOG_LEVEL).upper()
        log_dir = log_dir or settings.LOG_DIR
        try:
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            logging.config.dictConfig(LoggingConfig.build_config(level, log_dir))
        except (ValueError, OSError) as e:
            logging.basicConfig(level=level)
            logger.warning("Logging setup failed, using basic config: %s", e)
