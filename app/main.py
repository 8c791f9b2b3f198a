# app/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
import logging
import os

from app.config.settings import settings
from app.delivery.api.customization import router
from app.domain.errors import FrameCustomizationError

logger = logging.getLogger("uvicorn.error")


def _build_service(app: FastAPI):
    from app.config.database import AsyncSessionLocal
    from app.domain.customization_service import CustomizationService
    from app.domain.upload_orchestrator import UploadOrchestrator
    from app.infrastructure.cloudinary.upload_file import CloudinaryAssetStore
    from app.infrastructure.database.customization_repository import CustomizationRepository

    orchestrator = UploadOrchestrator(
        CloudinaryAssetStore(executor=app.state.executor),
        max_attempts=settings.UPLOAD_MAX_ATTEMPTS,
        timeout=settings.UPLOAD_TIMEOUT_SECONDS,
        backoff_base=settings.UPLOAD_BACKOFF_BASE_SECONDS,
        max_upload_bytes=settings.MAX_ORIGINAL_UPLOAD_BYTES,
    )
    return CustomizationService(
        orchestrator=orchestrator,
        repository=CustomizationRepository(AsyncSessionLocal),
        executor=app.state.executor,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    max_workers = min(4, os.cpu_count() or 1)  # Conservative limit
    app.state.executor = ThreadPoolExecutor(max_workers=max_workers)
    logger.info(f"Service '{settings.PROJECT_NAME}' starting (mode: {settings.ENVIRONMENT}).")
    logger.info(f"Shared ThreadPoolExecutor created with {max_workers} workers.")

    # Tests may install their own service before startup.
    if getattr(app.state, "customization_service", None) is None:
        from app.config.database import init_db

        await init_db()
        app.state.customization_service = _build_service(app)
    elif app.state.customization_service.executor is None:
        app.state.customization_service.executor = app.state.executor
    yield
    logger.info("Shutting down ThreadPoolExecutor...")
    app.state.executor.shutdown(wait=True)
    logger.info("Service stopped.")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Frame Customization Service",
        description="Position, scale and rotate a photo inside a frame template, then export size-budgeted renders to the asset store",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FrameCustomizationError)
    async def customization_error_handler(request: Request, exc: FrameCustomizationError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.to_dict()})

    app.include_router(router, prefix=settings.API_V1_STR)

    @app.get("/")
    async def root():
        return {"message": "Frame Customization Service", "version": "1.0.0", "status": "ok"}

    @app.get("/health")
    async def health_check(request: Request):
        return {
            "status": "ok",
            "service": "Frame Customization 1.0",
            "service_ready": getattr(request.app.state, "customization_service", None) is not None,
        }

    return app


app = create_app()
