import asyncio
import logging
import time

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from energy_backend import __version__
from energy_backend.common.exception import register_exception
from energy_backend.common.log import new_request_id, request_id_ctx, setup_logging
from energy_backend.core.conf import settings
from energy_backend.src.billing.container import BillingServices, build_billing_services
from energy_backend.src.billing.endpoints import billing_router

access_log = logging.getLogger('energy_backend.access')


@asynccontextmanager
async def register_init(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    启动初始化

    :param app: FastAPI 应用实例
    :return:
    """
    services: BillingServices = app.state.billing
    interval = services.settings.BILLING_RECONCILIATION_INTERVAL_SECONDS

    stop = asyncio.Event()
    sweep = None
    if interval > 0:
        sweep = asyncio.create_task(services.reconciliation.run_periodically(interval, stop))

    yield

    stop.set()
    if sweep is not None:
        await sweep

    if app.state.owns_engine:
        from energy_backend.database.db import async_engine

        await async_engine.dispose()


def register_app(services: BillingServices | None = None) -> FastAPI:
    """
    注册 FastAPI 应用

    :param services: 预先构建的服务, 测试时注入假网关和临时数据库
    :return:
    """
    setup_logging()

    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        version=__version__,
        description=settings.FASTAPI_DESCRIPTION,
        docs_url=settings.FASTAPI_DOCS_URL,
        redoc_url=settings.FASTAPI_REDOC_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
        lifespan=register_init,
    )

    app.state.owns_engine = services is None
    if services is None:
        from energy_backend.database.db import async_db_session

        services = build_billing_services(settings, async_db_session)
    app.state.billing = services

    register_middleware(app)
    register_router(app)
    register_exception(app)

    return app


def register_middleware(app: FastAPI) -> None:
    """
    注册中间件（执行顺序从下往上）

    :param app: FastAPI 应用实例
    :return:
    """

    @app.middleware('http')
    async def access_middleware(request: Request, call_next):
        """Trace id + one access line per request."""
        rid = new_request_id(request.headers.get(settings.TRACE_ID_REQUEST_HEADER_KEY))
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - start) * 1000
            access_log.error(f'{request.method} {request.url.path} 500 {elapsed:.1f}ms')
            raise
        else:
            elapsed = (time.perf_counter() - start) * 1000
            access_log.info(f'{request.method} {request.url.path} {response.status_code} {elapsed:.1f}ms')
            response.headers[settings.TRACE_ID_REQUEST_HEADER_KEY] = rid
            return response
        finally:
            request_id_ctx.set(settings.TRACE_ID_LOG_DEFAULT_VALUE)

    # CORS
    if settings.MIDDLEWARE_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=['*'],
            allow_headers=['*'],
            expose_headers=settings.CORS_EXPOSE_HEADERS,
        )


def register_router(app: FastAPI) -> None:
    """
    路由

    :param app: FastAPI 应用实例
    :return:
    """
    app.include_router(billing_router, prefix=settings.FASTAPI_API_V1_PATH)
