# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Run the mail queue HTTP service with settings from config.ini and MQ_* variables."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mail_queue import EmailQueue, load_config
from mail_queue.api import create_app
from mail_queue.logger import configure_logging, get_logger


if __name__ == "__main__":
    config = load_config()
    configure_logging(config.log_level)
    logger = get_logger()

    # Create the queue but don't start it yet - let uvicorn handle the event loop
    queue = EmailQueue(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.start()
        logger.info(
            "Mail queue started (db=%s, scheduler_active=%s)",
            config.storage.db_path, config.scheduler_active,
        )
        yield
        await queue.stop()

    app = create_app(queue, api_token=config.server.api_token, lifespan=lifespan)

    uvicorn.run(app, host=config.server.host, port=config.server.port)
