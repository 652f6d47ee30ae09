import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from arena.api.dependencies import close_services
from arena.api.endpoints import admin as admin_endpoints
from arena.api.endpoints import lobby as lobby_endpoints
from arena.api.endpoints import matches as match_endpoints
from arena.core.config import settings
from arena.core.errors import ArenaError, ErrorKind
from arena.services.match_store import MatchConflictError

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_services()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# Include routers
app.include_router(lobby_endpoints.router, prefix="/lobby", tags=["Lobby"])
app.include_router(match_endpoints.router, prefix="/matches", tags=["Matches"])
app.include_router(admin_endpoints.router, prefix="/admin", tags=["Admin"])


@app.exception_handler(ArenaError)
async def arena_error_handler(request: Request, exc: ArenaError):
    if exc.kind == ErrorKind.INTERNAL:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    content = {"detail": exc.message, "kind": exc.kind.value}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.http_status, content=content)


@app.exception_handler(MatchConflictError)
async def match_conflict_handler(request: Request, exc: MatchConflictError):
    logger.warning("%s %s gave up after repeated conflicts: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Match is busy, please retry", "kind": ErrorKind.INTERNAL.value},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "kind": ErrorKind.INTERNAL.value},
    )


@app.get("/")
async def read_root():
    return {"name": settings.APP_NAME, "status": "ok"}
