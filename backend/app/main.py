import logging.config

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from conecta.realtime.errors import RealtimeError
from conecta.realtime.managers import shutdown_realtime, startup_realtime

from app.api.deps import realtime_error_status
from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import get_settings

settings = get_settings()


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": settings.log_level,
    },
    "loggers": {
        "conecta.realtime": {"level": settings.log_level},
        "conecta.client": {"level": settings.log_level},
        "sqlalchemy.engine": {"level": "WARNING"},
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok", "environment": settings.environment}


@app.exception_handler(RealtimeError)
async def _realtime_error(request: Request, exc: RealtimeError) -> JSONResponse:
    status_code = realtime_error_status(exc)
    if status_code >= 500:
        logger.error("Unhandled realtime error", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(status_code=status_code, content={"detail": exc.detail, "code": exc.code})


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await shutdown_realtime()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
app.include_router(metrics_router)
