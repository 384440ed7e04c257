"""API-Datenmodelle des Front-Service (Pydantic für FastAPI)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ProcessRequest(BaseModel):
    """Body von ``POST /api/process``."""

    data: list[Any] = Field(default_factory=list)


class LogsRequest(BaseModel):
    """Body von ``POST /api/logs-to-lambda``."""

    message: str = ""
    level: str = "info"
    metadata: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    timestamp: str


class UsersResponse(BaseModel):
    success: bool
    count: int
    users: list[Any]


class ProcessResponse(BaseModel):
    processed: bool
    items: int
    timestamp: str


class MetricsDemoResponse(BaseModel):
    success: bool
    randomValue: int  # noqa: N815
    message: str


class LogsResponse(BaseModel):
    success: bool
    message: str
    lambdaResponse: Any = None  # noqa: N815
