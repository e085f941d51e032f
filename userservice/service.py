"""HTTP API exposing the user record operations."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from . import metrics
from .application import Collaborators, build_collaborators
from .cache import RecordCache
from .config import ServiceConfig, config_from_env
from .counter import RequestCounter
from .database import Database
from .errors import ConflictError, NotFoundError, TransientIOError
from .models import Record
from .notifier import Notifier
from .pipeline import RecordPipeline

logger = logging.getLogger("userservice.service")


def _normalise_email(value: str) -> str:
    stripped = value.strip().lower()
    local, _, domain = stripped.partition("@")
    if not local or not domain:
        raise ValueError("email must be a valid address")
    return stripped


class UserCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=320)

    @field_validator("name")
    @classmethod
    def _normalise_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be empty")
        return stripped

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _normalise_email(value)


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, min_length=3, max_length=320)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalise_email(value)

    @model_validator(mode="after")
    def _ensure_non_empty(self):  # type: ignore[override]
        if self.name is None and self.email is None:
            raise ValueError("Update payload must include name or email")
        return self

    def fields(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    created_at: datetime
    active: bool


class UserListResponse(BaseModel):
    users: List[UserResponse]


def _record_to_response(record: Record) -> UserResponse:
    return UserResponse(
        id=record.id,
        name=record.name,
        email=record.email,
        created_at=record.created_at,
        active=record.active,
    )


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or "unmatched"


def register_user_routes(app: FastAPI, pipeline: RecordPipeline, counter: RequestCounter) -> None:
    """Map the HTTP verbs onto the record pipeline operations."""

    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/users", status_code=status.HTTP_201_CREATED, response_model=UserResponse)
    def create_user(request: UserCreateRequest) -> UserResponse:
        counter.increment("create")
        try:
            record = pipeline.create(request.name, request.email)
        except ConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _record_to_response(record)

    @app.get("/users", response_model=UserListResponse)
    def list_users() -> UserListResponse:
        counter.increment("list")
        return UserListResponse(users=[_record_to_response(record) for record in pipeline.list()])

    @app.get("/users/{user_id}", response_model=UserResponse)
    def get_user(user_id: str) -> UserResponse:
        counter.increment("read")
        try:
            record = pipeline.read(user_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return _record_to_response(record)

    @app.put("/users/{user_id}", response_model=UserResponse)
    def update_user(user_id: str, request: UserUpdateRequest) -> UserResponse:
        counter.increment("update")
        try:
            record = pipeline.update(user_id, request.fields())
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _record_to_response(record)

    @app.put("/users/{user_id}/status", response_model=UserResponse)
    def deactivate_user(user_id: str) -> UserResponse:
        counter.increment("deactivate")
        try:
            record = pipeline.deactivate(user_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return _record_to_response(record)

    @app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_user(user_id: str) -> Response:
        counter.increment("delete")
        try:
            pipeline.delete(user_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/metric")
    def request_counts() -> Dict[str, object]:
        return counter.snapshot()

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics() -> Response:
        body, content_type = metrics.render_latest()
        return Response(content=body, media_type=content_type)


def create_app(
    *,
    config: ServiceConfig | None = None,
    collaborators: Collaborators | None = None,
    database: Database | None = None,
    cache: RecordCache | None = None,
    notifier: Notifier | None = None,
    counter: RequestCounter | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the user record service."""

    if collaborators is None:
        collaborators = build_collaborators(
            config or config_from_env(),
            database=database,
            cache=cache,
            notifier=notifier,
            counter=counter,
        )
    handles = collaborators

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            handles.close()

    app = FastAPI(
        title="User Record Service",
        version="0.1.0",
        description="User records backed by a durable store, a read-through cache and an event channel.",
        lifespan=lifespan,
    )

    pipeline = handles.pipeline()
    app.state.collaborators = handles
    app.state.pipeline = pipeline

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        started = time.perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            metrics.observe_request(_route_label(request), status_code, time.perf_counter() - started)

    @app.exception_handler(TransientIOError)
    async def transient_io_error(request: Request, exc: TransientIOError) -> JSONResponse:
        logger.error("Backing service unavailable during %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Storage backend temporarily unavailable"},
        )

    register_user_routes(app, pipeline, handles.counter)
    return app


__all__ = ["create_app", "register_user_routes"]
