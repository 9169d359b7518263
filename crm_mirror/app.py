"""FastAPI application for the CRM mirror service."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .database import create_tables

    await create_tables()
    yield


app = FastAPI(title=settings.app_title, lifespan=lifespan)

# Import and register routers
from .routers import health, sync, webhooks  # noqa: E402

app.include_router(sync.router)
app.include_router(webhooks.router)
app.include_router(health.router)
