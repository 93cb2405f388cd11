"""FastAPI application for the activity-ops HTTP surface."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from activity_ops import __version__
from activity_ops.db import close_engines

from .sync.router import router as sync_router
from .webhooks.router import router as webhooks_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_engines()


app = FastAPI(title="activity-ops", version=__version__, lifespan=lifespan)
app.include_router(webhooks_router)
app.include_router(sync_router)


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "version": __version__}
