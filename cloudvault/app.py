"""Aggregate FastAPI app for the cloudvault version endpoints."""
from __future__ import annotations

from fastapi import FastAPI

from cloudvault.versioning.routes import router as versions_router


def create_app() -> FastAPI:
    app = FastAPI(title="cloudvault")
    app.include_router(versions_router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
