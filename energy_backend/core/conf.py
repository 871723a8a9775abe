from functools import lru_cache
from typing import Any, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from energy_backend.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """全局配置"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env 当前环境
    ENVIRONMENT: Literal['dev', 'prod'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api'
    FASTAPI_TITLE: str = 'EnergyBackend'
    FASTAPI_DESCRIPTION: str = 'Energy bill payments and reconciliation'
    FASTAPI_DOCS_URL: str = '/docs'
    FASTAPI_REDOC_URL: str = '/redoc'
    FASTAPI_OPENAPI_URL: str | None = '/openapi'

    # .env 数据库
    DATABASE_TYPE: Literal['postgresql', 'sqlite'] = 'postgresql'
    DATABASE_HOST: str = '127.0.0.1'
    DATABASE_PORT: int = 5432
    DATABASE_USER: str = 'postgres'
    DATABASE_PASSWORD: str = ''

    # 数据库
    DATABASE_ECHO: bool | Literal['debug'] = False
    DATABASE_POOL_ECHO: bool | Literal['debug'] = False
    DATABASE_SCHEMA: str = 'energy_backend'
    # asyncpg connect and per-statement timeouts
    DATABASE_CONNECT_TIMEOUT_SECONDS: float = 10.0
    DATABASE_COMMAND_TIMEOUT_SECONDS: float = 30.0
    # Only used when DATABASE_TYPE is sqlite
    DATABASE_SQLITE_PATH: str = f'{BASE_PATH}/energy_backend.sqlite3'

    # .env Token (Supabase project JWT secret)
    TOKEN_SECRET_KEY: str = 'change-me'
    TOKEN_ALGORITHM: str = 'HS256'

    # CORS
    MIDDLEWARE_CORS: bool = True
    CORS_ALLOWED_ORIGINS: list[str] = [  # 末尾不带斜杠
        'http://localhost:5173',
    ]
    CORS_EXPOSE_HEADERS: list[str] = [
        'X-Request-ID',
    ]

    # 时间配置
    DATETIME_TIMEZONE: str = 'Asia/Kolkata'
    DATETIME_FORMAT: str = '%Y-%m-%d %H:%M:%S'

    # Trace ID
    TRACE_ID_REQUEST_HEADER_KEY: str = 'X-Request-ID'
    TRACE_ID_LOG_LENGTH: int = 32  # UUID 长度，必须小于等于 32
    TRACE_ID_LOG_DEFAULT_VALUE: str = '-'

    # 日志
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s'

    # 日志（控制台）
    LOG_STD_LEVEL: str = 'INFO'

    # .env Razorpay
    RAZORPAY_KEY_ID: str = ''
    RAZORPAY_KEY_SECRET: str = ''
    RAZORPAY_WEBHOOK_SECRET: str = ''

    # Razorpay
    RAZORPAY_API_URL: str = 'https://api.razorpay.com/v1'
    RAZORPAY_TIMEOUT_SECONDS: float = 10.0
    RAZORPAY_CIRCUIT_FAILURE_THRESHOLD: int = 5
    RAZORPAY_CIRCUIT_RECOVERY_SECONDS: int = 60

    # Billing
    BILLING_DEFAULT_CURRENCY: str = 'INR'
    BILLING_STORE_RETRY_ATTEMPTS: int = 3
    BILLING_STORE_RETRY_WAIT_SECONDS: float = 0.5
    BILLING_DUPLICATE_LOOKBACK_DAYS: int = 30
    # 0 disables the in-process sweep; run `energy-backend reconcile` from cron instead
    BILLING_RECONCILIATION_INTERVAL_SECONDS: int = 900

    @model_validator(mode='before')
    @classmethod
    def check_env(cls, values: Any) -> Any:
        """检查环境变量"""
        if values.get('ENVIRONMENT') == 'prod':
            # FastAPI
            values['FASTAPI_OPENAPI_URL'] = None
        return values

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)


@lru_cache
def get_settings() -> Settings:
    """获取全局配置单例"""
    return Settings()


# 创建全局配置实例
settings = get_settings()
