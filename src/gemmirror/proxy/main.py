"""Uvicorn entrypoint for the gem mirror proxy."""

from __future__ import annotations

import uvicorn

from ..common.settings import GemMirrorSettings
from .app import create_app


def main() -> None:
    settings = GemMirrorSettings()
    uvicorn.run(
        create_app(settings),
        host=settings.bind_host,
        port=settings.bind_port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
