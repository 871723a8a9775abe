import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from energy_backend.src.billing.shared.exceptions import BillingError

logger = logging.getLogger(__name__)


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get('loc', ()) if part not in ('body', 'query', 'path', 'header')]
        errors.append({'field': '.'.join(loc) or None, 'message': error.get('msg')})
    return errors


def register_exception(app: FastAPI) -> None:
    """注册全局异常处理"""

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError):
        """业务异常处理"""
        if exc.status_code >= 500:
            logger.error(f'{request.method} {request.url.path} -> {exc.code}: {exc.message}')
        return JSONResponse(status_code=exc.status_code, content={'success': False, **exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求参数验证异常处理"""
        errors = _validation_errors(exc)
        first = errors[0] if errors else {'field': None, 'message': 'Invalid request'}
        return JSONResponse(
            status_code=400,
            content={
                'success': False,
                'error': 'INVALID_INPUT',
                'message': f"{first['field']}: {first['message']}" if first['field'] else first['message'],
                'details': {'errors': errors},
            },
        )

    @app.exception_handler(Exception)
    async def all_unknown_exception_handler(request: Request, exc: Exception):
        """全局未知异常处理"""
        logger.exception(f'Unhandled error on {request.method} {request.url.path}: {exc}')
        return JSONResponse(
            status_code=500,
            content={
                'success': False,
                'error': 'INTERNAL_ERROR',
                'message': 'Internal server error',
                'details': {},
            },
        )
