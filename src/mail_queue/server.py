# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads
configuration with :func:`load_config` and starts the EmailQueue
poll loops within the application lifespan.

Usage:
    uvicorn mail_queue.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MQ_CONFIG: Path to the INI file (default: config.ini)
    MQ_DB_PATH: Database path or DSN (default: /data/mail_queue.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import load_config
from .logger import configure_logging
from .queue import EmailQueue

_config = load_config()
configure_logging(_config.log_level)

_queue = EmailQueue(_config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the queue."""
    await _queue.start()
    yield
    await _queue.stop()


app = create_app(_queue, api_token=_config.server.api_token, lifespan=lifespan)
