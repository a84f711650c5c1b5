"""FastAPI application factory for the topic mirror."""

from __future__ import annotations

from fastapi import FastAPI

from topicmirror.api.routes import router


def create_app() -> FastAPI:
    app = FastAPI(title="Topic Mirror", description="Incremental mirror of a paginated content API")
    app.include_router(router, prefix="/api")
    return app


app = create_app()
