"""Order Lifecycle Service - Main Entry Point."""

import os

from order_lifecycle.server.app import create_app

# Create FastAPI application
app = create_app()

if __name__ == "__main__":
    import uvicorn

    from order_lifecycle.config.settings import get_settings

    settings = get_settings()
    reload = os.getenv("RELOAD", "false").lower() == "true"

    uvicorn.run(
        "order_lifecycle.main:app",
        host=settings.host,
        port=settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=60,  # covers draining pending notifications
        timeout_keep_alive=5,
        access_log=False,  # Disable uvicorn access log (we use structured logging)
    )
