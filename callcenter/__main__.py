"""Run the relay under uvicorn: ``python -m callcenter``."""
from __future__ import annotations

import logging

import uvicorn

from .core.config import get_settings


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # Load settings before binding the port so missing configuration fails fast.
    settings = get_settings()
    uvicorn.run("callcenter.main:create_app", factory=True, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
