"""
Shared response envelope.

Successful responses are wrapped as {"success": true, "data": ...}; failures
are rendered by the global exception handlers.
"""

from typing import Generic, TypeVar
from pydantic import BaseModel

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
