"""FastAPI server entrypoint."""

from __future__ import annotations

import uvicorn

from src.common.settings import get_settings


def run() -> None:
    settings = get_settings()
    uvicorn.run("src.api.app:app", host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
