import logging
import time
from datetime import timedelta
from typing import Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .. import __version__
from ..core.config import Settings
from ..core.database.db import Database
from ..core.devices.gateway import DeviceGatewayClient
from ..core.exceptions import MesError, ValidationError
from ..core.process.order_status import OrderService
from ..core.process.retry import ActionRetryRunner
from ..core.process.workflow_engine import WorkflowExecutionEngine
from ..core.session.manager import SessionManager
from .routes import orders, workflow, workstation

logger = logging.getLogger("mesflow.api")


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    gateway: Optional[DeviceGatewayClient] = None,
) -> FastAPI:
    """
    Build the FastAPI application and the services behind it.

    Args:
        settings: Application settings; read from the environment when omitted
        database: Pre-built database handle
        gateway: Pre-built Device Gateway client
    """
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_url, echo=settings.echo_sql)
    gateway = gateway or DeviceGatewayClient(
        settings.device_gateway_url, timeout=settings.device_gateway_timeout
    )

    app = FastAPI(
        title="MesFlow API",
        description="Workstation session and workflow execution API for manufacturing lines",
        version=__version__,
    )

    engine = WorkflowExecutionEngine(database, gateway, history_limit=settings.history_limit)
    app.state.settings = settings
    app.state.database = database
    app.state.gateway = gateway
    app.state.session_manager = SessionManager(
        database, gateway, session_timeout=timedelta(seconds=settings.session_timeout_seconds)
    )
    app.state.workflow_engine = engine
    app.state.order_service = OrderService(database)
    app.state.retry_runner = ActionRetryRunner(engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable):
        """Log request/response info"""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        client = f"{request.client.host}:{request.client.port}" if request.client else "-"
        logger.info(
            f"{client} - \"{request.method} {request.url.path}\" "
            f"{response.status_code} {process_time:.3f}s"
        )
        return response

    @app.exception_handler(MesError)
    async def mes_error_handler(request: Request, exc: MesError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.error_code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in errors]
        message = f"Invalid request: {', '.join(fields) or 'body'}"
        error = ValidationError(message, fields=fields, errors=errors)
        return JSONResponse(status_code=422, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Request failed: {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    app.include_router(workstation.router)
    app.include_router(workflow.router)
    app.include_router(orders.router)

    @app.get("/api/health")
    async def health_check():
        """API health check endpoint"""
        return {"status": "ok", "version": app.version}

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting MesFlow API")
        try:
            await database.create_all(drop_first=settings.drop_tables)
        except Exception as e:
            # The database may come up later
            logger.error(f"Failed to initialize database: {e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down MesFlow API")
        await gateway.close()
        await database.dispose()

    return app
