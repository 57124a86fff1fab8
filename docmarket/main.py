"""Entrypoint for running the document marketplace API."""
from __future__ import annotations

import uvicorn

from . import create_app
from .config import get_settings
from .logging_utils import configure_logging


configure_logging(get_settings().log_level)
app = create_app()


if __name__ == "__main__":
    uvicorn.run("docmarket.main:app", host="0.0.0.0", port=8000, reload=True)
