# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config.loader import get_str_env
from src.memory.dependencies import (
    MemoryServices,
    get_memory_services,
    initialise_memory_services,
)
from src.memory.router import router as memory_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    services = initialise_memory_services()
    if services.store is not None:
        await services.store.init()
    services.retention.start()
    try:
        yield
    finally:
        await services.retention.stop()
        await services.tasks.close()
        if services.store is not None:
            await services.store.close()


app = FastAPI(
    title="Thread Memory API",
    description="Conversation memory for chat bots",
    version="0.1.0",
    lifespan=lifespan,
)

allowed_origins_str = get_str_env("ALLOWED_ORIGINS", "http://localhost:3000")
allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",")]

logger.info("Allowed origins: %s", allowed_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(memory_router)


@app.get("/api/config")
async def config(services: MemoryServices = Depends(get_memory_services)) -> dict[str, Any]:
    """Get the memory configuration of the server."""
    settings = services.settings
    return {
        "storage_enabled": services.store is not None,
        "retention_running": services.retention.running,
        "pending_tasks": services.tasks.pending_count,
        "context": {
            "candidate_window": settings.candidate_window,
            "max_item_chars": settings.max_item_chars,
        },
        "retention": {
            "message_ttl_hours": settings.message_ttl_hours,
            "item_ttl_hours": settings.item_ttl_hours,
            "run_ttl_hours": settings.run_ttl_hours,
        },
    }
