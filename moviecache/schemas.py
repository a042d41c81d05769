"""Pydantic schemas for API responses."""

from typing import Optional, List
from pydantic import BaseModel


class CacheStatsOut(BaseModel):
    size: int
    entries: List[str]
    hits: int
    misses: int
    pending: int
    component_size: int
    component_max_size: int


class InvalidateOut(BaseModel):
    pattern: Optional[str] = None
    removed: int
    component_removed: int = 0


class ProblemDetail(BaseModel):
    """RFC 7807-style problem response (simplified)."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
