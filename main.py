import uvicorn

from arena.core.config import settings


if __name__ == "__main__":
    uvicorn.run("arena.main:app", host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
