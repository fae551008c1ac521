"""API server entry point for python -m cinesum.api."""

import logging

import uvicorn

from cinesum.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "cinesum.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
