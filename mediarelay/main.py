from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from mediarelay.utils.logger import config as configure_logger
from mediarelay._version import __version__
from mediarelay.config import (
    ALLOWED_ORIGINS,
    DEV_MODE,
    EDGE_CACHE_MAX_ENTRIES,
    IMAGE_RATE_LIMIT,
    RATE_LIMIT_WINDOW_SECONDS,
    ROUTE_PREFIX,
    STREAM_RATE_LIMIT,
)
from mediarelay.api.proxy import router as proxy_router
from mediarelay.core.relay import RelayError, error_payload

load_dotenv()
configure_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Application startup: mediarelay {__version__}")
    logger.info(
        f"Routes mounted at '{ROUTE_PREFIX}' and '/'; dev_mode={DEV_MODE}; "
        f"allowed_origins={ALLOWED_ORIGINS or '<any>'}"
    )
    logger.info(
        f"Rate limits image={IMAGE_RATE_LIMIT} stream={STREAM_RATE_LIMIT} "
        f"per {RATE_LIMIT_WINDOW_SECONDS}s; edge cache max {EDGE_CACHE_MAX_ENTRIES} entries"
    )
    yield
    logger.info("Application shutdown.")


app = FastAPI(title="mediarelay", version=__version__, lifespan=lifespan)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    logger.debug(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc.message))


app.include_router(proxy_router, prefix=ROUTE_PREFIX)  # /api/proxy/image, /api/proxy/stream
app.include_router(proxy_router, include_in_schema=False)  # bare /image, /stream


# Healthcheck endpoint for CI/CD and monitoring
@app.get("/health")
async def healthcheck():
    return {"status": "ok"}


if __name__ == "__main__":
    from mediarelay.cli import run_server

    logger.info("Starting mediarelay FastAPI server...")
    run_server(app)
