"""Module entrypoint to run the gateway with uvicorn.

Example:
    python -m edgevoice
"""
from __future__ import annotations

import uvicorn
from uvicorn.config import Config

from edgevoice.server import _load_settings, app


def main() -> None:
    settings = _load_settings()
    config = Config(
        app=app,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )
    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    main()
