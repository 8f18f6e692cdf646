# src/api/app.py
"""
FastAPI приложение ride_dispatch.

Endpoints:
- POST /rides, GET /rides, GET /rides/{id}
- POST /rides/{id}/accept | advance | cancel | counter-offers | counter-offers/respond
- POST /drivers/me/online | offline | location, GET /drivers/nearby
- GET|POST /wallet/me, GET /wallet/me/history, GET /wallet/me/verify
- POST /wallet/transfers, POST /wallet/bonus, POST /wallet/{id}/block | unblock
- GET /health, GET /stats
- WS /ws
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api import realtime
from src.api.dependencies import cleanup_dependencies, init_dependencies
from src.api.routes import drivers, health, rides, wallet
from src.common.errors import ConflictError, DispatchError, InternalError
from src.common.logger import log_debug, log_error, log_info, log_warning
from src.common.constants import TypeMsg
from src.config.loader import Settings, get_settings
from src.container import ServiceContainer, build_services, shutdown_services
from src.shared.models.common import ErrorResponse

GENERIC_INTERNAL_MESSAGE = "Внутренняя ошибка сервиса"


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or uuid4().hex


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Собирает приложение.

    Args:
        container: Готовые сервисы (тесты); иначе собираются в lifespan
        settings: Настройки (по умолчанию глобальные)
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Жизненный цикл приложения."""
        owned = container is None
        services = container or await build_services(settings)
        init_dependencies(services)
        await log_info("HTTP API запущено", type_msg=TypeMsg.INFO)

        yield

        cleanup_dependencies()
        if owned:
            await shutdown_services(services)
        await log_info("HTTP API остановлено", type_msg=TypeMsg.INFO)

    app = FastAPI(
        title="Ride Dispatch",
        description="Диспетчеризация поездок: поиск водителей, жизненный цикл, кошельки.",
        version=health.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None if settings.system.is_production else "/docs",
        redoc_url=None,
    )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
        message = exc.message
        details = exc.details or None
        if isinstance(exc, InternalError):
            await log_error(f"{request.method} {request.url.path}: {exc.message}")
            if settings.system.is_production:
                message, details = GENERIC_INTERNAL_MESSAGE, None
        elif exc.status_code >= 500:
            await log_error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
        elif isinstance(exc, ConflictError):
            # Гонка водителей за поездку штатная
            await log_debug(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
        else:
            await log_warning(f"{request.method} {request.url.path}: {exc.code} {exc.message}")

        body = ErrorResponse(
            error_code=exc.code,
            message=message,
            details=details,
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Некорректный запрос",
            details={"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in exc.errors()
            ]},
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=422, content=body.model_dump(mode="json"))

    app.include_router(health.router)
    app.include_router(rides.router)
    app.include_router(drivers.router)
    app.include_router(wallet.router)
    app.include_router(realtime.router)
    return app
