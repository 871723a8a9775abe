import logging
import logging.config
import uuid

from contextvars import ContextVar

from energy_backend.core.conf import settings

request_id_ctx: ContextVar[str] = ContextVar('request_id', default=settings.TRACE_ID_LOG_DEFAULT_VALUE)


def get_request_id() -> str:
    """获取当前请求的 trace id"""
    return request_id_ctx.get()


def new_request_id(incoming: str | None = None) -> str:
    """
    使用请求头中的 trace id, 缺失时生成新的

    :param incoming: 请求头中的 trace id
    :return:
    """
    rid = (incoming or uuid.uuid4().hex)[: settings.TRACE_ID_LOG_LENGTH]
    request_id_ctx.set(rid)
    return rid


class RequestIdFilter(logging.Filter):
    """Stamp every record with the active request id so LOG_FORMAT can print it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def setup_logging() -> None:
    """日志初始化"""
    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {
                'request_id': {'()': RequestIdFilter},
            },
            'formatters': {
                'default': {'format': settings.LOG_FORMAT},
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'formatter': 'default',
                    'filters': ['request_id'],
                    'stream': 'ext://sys.stdout',
                },
            },
            'root': {
                'level': settings.LOG_STD_LEVEL,
                'handlers': ['console'],
            },
            'loggers': {
                # granian 自带 access log, 由中间件统一输出
                'granian.access': {'level': 'WARNING'},
                'sqlalchemy.engine': {'level': 'WARNING'},
            },
        }
    )


log = logging.getLogger('energy_backend')
