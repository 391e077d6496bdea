"""Main entry point for changefeed-service.

Runs the FastAPI application under uvicorn. SIGINT/SIGTERM trigger a
graceful shutdown: the lifespan closes the change stream, every WebSocket
client and the MongoDB client before the process exits.
"""

from __future__ import annotations

import sys
from typing import NoReturn


def run_fastapi_server() -> NoReturn:
    """Run the FastAPI application server.

    Uses uvicorn as the ASGI server with settings from configuration.
    """
    import uvicorn

    from changefeed_service.core.settings import get_app_settings, get_logging_settings

    settings = get_app_settings()
    log_settings = get_logging_settings()

    uvicorn.run(
        "changefeed_service.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        access_log=settings.debug,
        log_level=log_settings.level.lower(),
    )
    sys.exit(0)


def main() -> NoReturn:
    run_fastapi_server()


if __name__ == "__main__":
    main()
