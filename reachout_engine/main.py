"""
ASGI entry point: ``uvicorn reachout_engine.main:app``.
"""

from typing import Optional

import uvicorn

from .api import app  # noqa: F401
from .config import get_settings


def run(
    host: Optional[str] = None, port: Optional[int] = None, reload: bool = False
) -> None:
    """Serve the API with uvicorn, falling back to host/port/workers from settings."""
    settings = get_settings()
    reload = reload or settings.debug
    uvicorn.run(
        "reachout_engine.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        workers=1 if reload else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
