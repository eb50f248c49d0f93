"""Unified API response schemas."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Wire model that reads and writes camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    """Machine-readable error code and human message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Failure envelope."""

    success: bool = False
    error: ErrorBody


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope with status, message, and data."""

    success: bool = True
    status: int = 200
    message: str = "Success"
    data: T | None = None


def success_response(data: T, status: int = 200, message: str = "Success") -> dict:
    """Build a success response dict for returning from endpoints."""
    return {"success": True, "status": status, "message": message, "data": data}
