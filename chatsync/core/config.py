from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 基础配置
    DATABASE_URL: str = "sqlite:///./chatsync.db"
    REDIS_URL: str | None = None
    CHANGE_FEED_PREFIX: str = "chatsync:changes:"
    DEV_AUTO_CREATE_TABLES: bool = False

    # 认证配置 (only used to read the user id from a bearer token)
    JWT_SECRET: str = "change_me"
    JWT_ALGORITHM: str = "HS256"

    # 已读 / 可见性
    READ_DEBOUNCE_SECONDS: float = 0.3
    READ_DWELL_SECONDS: float = 0.5
    READ_VISIBILITY_THRESHOLD: float = 0.5
    UNREAD_INCLUDES_OWN_MESSAGES: bool = False

    # 输入状态
    TYPING_TTL_SECONDS: float = 3.0
    TYPING_STALE_SECONDS: float = 5.0

    # 消息加载 / 实时
    MESSAGE_PAGE_SIZE: int = 50
    FEED_COALESCE_SECONDS: float = 0.0

    # 安全配置
    ENABLE_CORS: bool = False
    ALLOWED_ORIGINS: str = "*"

    # 监控配置
    ENABLE_METRICS: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # 应用版本
    VERSION: str = "1.0.0"

    # Media Storage Settings
    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_SECURE: bool = False
    STORAGE_BUCKET: str = "message-attachments"
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024  # 50MB
    MEDIA_URL_EXPIRE_SECONDS: int = 3600  # 1 hour
    MEDIA_PUBLIC_BASE_URL: str | None = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
