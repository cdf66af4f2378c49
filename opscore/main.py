from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from opscore.api import admin, audit, dashboard, requests, steps, system
from opscore.core.config import settings
from opscore.core.exceptions import OpsCoreError
from opscore.core.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from opscore.db.session import init_db
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}")
    init_db()
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OpsCoreError)
async def ops_core_error_handler(request: Request, exc: OpsCoreError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    content = {"detail": exc.message, "error": type(exc).__name__}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(requests.router)
app.include_router(steps.router)
app.include_router(dashboard.router)
app.include_router(audit.router)
app.include_router(admin.router)
app.include_router(system.router)


@app.get("/health")
async def health():
    return {"status": "healthy", "version": settings.APP_VERSION}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
