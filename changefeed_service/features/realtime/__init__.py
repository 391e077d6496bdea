"""Realtime feature: push order changes to WebSocket clients.

Usage:
    # In your FastAPI app
    from changefeed_service.features.realtime import router
    app.include_router(router)

    # Connect via WebSocket
    ws://localhost:3000/ws
"""

from changefeed_service.features.realtime.router import router

__all__ = ["router"]
