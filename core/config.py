"""
配置文件 - 项目配置管理
"""
import json

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    url: str | None = None
    max_connections: int = 10
    namespace: str = "payment-orchestrator"


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(
        default="Payment Orchestrator",
        validation_alias=AliasChoices("PROJECT_NAME", "APP_NAME"),
    )
    VERSION: str = Field(default="1.0.0", validation_alias=AliasChoices("VERSION", "APP_VERSION"))
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # 分组配置：Redis 采用嵌套模型（REDIS__URL 等）
    redis: RedisSettings = Field(default_factory=RedisSettings)

    # CORS配置
    CORS_ORIGINS: list[str] = Field(default=["http://localhost:3000", "http://localhost:8000"])

    # 分页配置（支持环境变量覆盖）
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # 日志/请求体记录配置
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = True
    LOG_REQUEST_BODY_MAX_BYTES: int = 2048

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                try:
                    arr = json.loads(s)
                except ValueError:
                    arr = None
                if isinstance(arr, list):
                    return arr
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v


settings = Settings()
