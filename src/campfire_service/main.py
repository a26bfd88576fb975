"""Console entry point: serve the app with uvicorn using the configured host and port."""

from __future__ import annotations

import uvicorn

from campfire_service.config import get_settings


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "campfire_service.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )


if __name__ == "__main__":
    run()
