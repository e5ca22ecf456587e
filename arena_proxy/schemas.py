"""Pydantic schemas for API response bodies."""

from typing import Optional, Literal
from pydantic import BaseModel


class HealthcheckOut(BaseModel):
    status: Literal["ok"]
    auth_tier: Literal["auth", "anon"]
    cache_entries: int
    in_flight: int
    upstream_active: int
    upstream_waiting: int
    max_concurrency: int


class ProblemDetail(BaseModel):
    """RFC 7807-style problem response (simplified)."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
