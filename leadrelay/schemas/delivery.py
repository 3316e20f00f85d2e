"""
Request/response schemas for the job and catalog endpoints.
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from leadrelay.models.delivery_job import Priority


class SubmitJobRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    delay_ms: int = Field(default=0, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=25)


class SubmitJobResponse(BaseModel):
    job_id: str
    queue_name: str


class JobStatusResponse(BaseModel):
    job_id: str
    queue_name: str
    state: str
    attempts: int
    max_attempts: int
    progress: Optional[dict] = None
    result: Optional[dict] = None
    failure_reason: Optional[str] = None
    delay_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    status: str = Field(default="active", pattern="^(active|draft|archived)$")
    price: Optional[float] = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    status: Optional[str] = Field(default=None, pattern="^(active|draft|archived)$")
    price: Optional[float] = Field(default=None, ge=0)
    tags: Optional[list[str]] = None
