"""FastAPI application."""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from entityforge.auth.types import UserContext
from entityforge.effects import EffectSink, LoggingSink
from entityforge.engine import ReadService, WritePipeline
from entityforge.errors import EngineError, forbidden, invalid_payload
from entityforge.metadata import MetadataError, RegistryHolder, load_registry
from entityforge.persistence import DatabaseConfig, Store, metadata_path_from_env

logger = logging.getLogger(__name__)


# --- Request models ---


class WriteRequest(BaseModel):
    """Request body for create and update operations."""
    data: dict[str, Any]


class QueryRequest(BaseModel):
    """Request body for structured list queries."""
    filter: Any = None
    sort: list[str] | None = None
    page: int = 1
    per_page: int = 25
    include: list[str] | None = None


def get_user(request: Request) -> UserContext | None:
    """Caller identity from the gateway headers; None when both are absent."""
    user_id = request.headers.get("X-User-Id")
    roles_header = request.headers.get("X-User-Roles", "")
    roles = [r.strip() for r in roles_header.split(",") if r.strip()]
    if user_id is None and not roles:
        return None
    return UserContext(user_id=user_id, roles=roles)


def create_app(
    metadata_path: Path | None = None,
    database_url: str | None = None,
    effects: EffectSink | None = None,
) -> FastAPI:
    """Build the API.

    Args:
        metadata_path: Metadata directory (default: ENTITYFORGE_METADATA_PATH
            or ./metadata)
        database_url: Database URL (default: DatabaseConfig.from_env())
        effects: Effect sink for webhooks and triggers (default: LoggingSink,
            which logs and drops)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize on startup, cleanup on shutdown."""
        path = metadata_path or metadata_path_from_env()
        config = DatabaseConfig(database_url) if database_url else DatabaseConfig.from_env(path.parent)

        # Ensure parent directory exists for SQLite databases
        if config.sqlite_path is not None:
            config.sqlite_path.parent.mkdir(parents=True, exist_ok=True)

        registry = load_registry(path)
        logger.info("Loaded metadata from %s: %s", path, registry.summary())

        store = Store(config)
        holder = RegistryHolder(registry)
        app.state.metadata_path = path
        app.state.holder = holder
        app.state.store = store
        app.state.effects = effects if effects is not None else LoggingSink()
        app.state.pipeline = WritePipeline(holder, store, app.state.effects)

        yield

        # Cleanup
        store.dispose()

    app = FastAPI(title="EntityForge API", lifespan=lifespan)

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    def reader(request: Request) -> ReadService:
        return ReadService(request.app.state.holder.current, request.app.state.store)

    # --- Admin ---

    @app.post("/api/_admin/reload")
    async def reload_metadata(request: Request) -> dict[str, Any]:
        """Rebuild the registry from disk and swap it in atomically."""
        user = get_user(request)
        if user is None or not user.is_admin:
            raise forbidden("metadata reload requires the admin role")
        try:
            registry = load_registry(request.app.state.metadata_path)
        except MetadataError as e:
            raise invalid_payload(f"metadata reload failed: {e}") from e
        request.app.state.holder.swap(registry)
        return {"reloaded": True, "summary": registry.summary()}

    # --- Reads ---

    @app.get("/api/{entity}")
    async def list_records(
        entity: str,
        request: Request,
        filter: str | None = None,
        sort: str | None = None,
        page: int = 1,
        per_page: int = 25,
        include: str | None = None,
    ) -> dict[str, Any]:
        """List records; ``filter`` is a JSON-encoded condition object."""
        conditions = None
        if filter:
            try:
                conditions = json.loads(filter)
            except json.JSONDecodeError as e:
                raise invalid_payload(f"filter is not valid JSON: {e}") from e
        return await reader(request).list(
            entity,
            get_user(request),
            filters=conditions,
            sort=sort,
            page=page,
            per_page=per_page,
            include=include,
        )

    @app.post("/api/query/{entity}")
    async def query_records(entity: str, query: QueryRequest, request: Request) -> dict[str, Any]:
        return await reader(request).list(
            entity,
            get_user(request),
            filters=query.filter,
            sort=query.sort,
            page=query.page,
            per_page=query.per_page,
            include=query.include,
        )

    @app.get("/api/{entity}/{id}")
    async def get_record(entity: str, id: str, request: Request, include: str | None = None) -> dict[str, Any]:
        record = await reader(request).get(entity, id, get_user(request), include=include)
        return {"data": record}

    # --- Writes ---

    @app.post("/api/{entity}")
    async def create_record(entity: str, body: WriteRequest, request: Request):
        record = await request.app.state.pipeline.create(entity, body.data, get_user(request))
        return JSONResponse(status_code=201, content={"data": record})

    @app.put("/api/{entity}/{id}")
    async def update_record(entity: str, id: str, body: WriteRequest, request: Request) -> dict[str, Any]:
        record = await request.app.state.pipeline.update(entity, id, body.data, get_user(request))
        return {"data": record}

    @app.delete("/api/{entity}/{id}")
    async def delete_record(entity: str, id: str, request: Request) -> dict[str, Any]:
        record = await request.app.state.pipeline.delete(entity, id, get_user(request))
        return {"data": record}

    return app


app = create_app()
