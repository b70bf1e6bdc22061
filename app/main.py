import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from app.api.endpoints.uploads import router as uploads_router
from app.core.config import Settings, settings
from app.core.errors import UploadError
from app.services.assembler import UploadAssembler, build_assembler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def collect_idle_sessions(assembler: UploadAssembler, interval: float):
    """Periodically garbage-collect abandoned upload sessions."""
    while True:
        await asyncio.sleep(interval)
        try:
            await assembler.collect_idle()
        except Exception:
            logger.exception("Idle session collection failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    gc_task = asyncio.create_task(
        collect_idle_sessions(app.state.assembler, app.state.settings.GC_INTERVAL_SECONDS)
    )
    try:
        yield
    finally:
        gc_task.cancel()
        try:
            await gc_task
        except asyncio.CancelledError:
            pass


async def upload_error_handler(request: Request, exc: UploadError):
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(app_settings: Settings = settings, assembler: Optional[UploadAssembler] = None) -> FastAPI:
    app = FastAPI(
        title="Upload Assembler Service",
        version="1.0.0",
        openapi_url=None if app_settings.ENV == "production" else "/openapi.json",
        docs_url=None if app_settings.ENV == "production" else "/docs",
        redoc_url=None if app_settings.ENV == "production" else "/redoc",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.assembler = assembler or build_assembler(app_settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=[
            "Accept",
            "Content-Type",
            "Origin",
            "Authorization",
            "X-CSRF-Token",
            "X-Requested-With",
        ],
    )
    app.add_exception_handler(UploadError, upload_error_handler)
    app.include_router(uploads_router, prefix="/uploads", tags=["uploads"])
    return app


app = create_app()
