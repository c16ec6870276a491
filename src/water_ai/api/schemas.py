from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

JobStatus = Literal["pending", "processing", "complete", "error"]
HandSize = Literal["small", "medium", "large"]


class AnalyzeWaterRequest(BaseModel):
    user_id: int
    base64: str = Field(min_length=1)
    mime_type: Optional[str] = None
    percentage: Optional[float] = Field(default=None, gt=0, le=100)
    duration: Optional[str] = None
    servings: int = Field(default=1, ge=1)
    liquid_type: Optional[str] = None

    # normally read from the user's settings row
    hand_size: HandSize = "medium"
    sip_size: HandSize = "medium"


class AnalyzeBarcodeRequest(BaseModel):
    user_id: int
    base64: str = Field(min_length=1)
    mime_type: Optional[str] = None
    percentage: Optional[float] = Field(default=None, gt=0, le=100)
    duration: Optional[str] = None
    servings: int = Field(default=1, ge=1)
    liquid_type: Optional[str] = None
    sip_size: HandSize = "medium"


class AnalyzeTextRequest(BaseModel):
    user_id: int
    description: str = Field(min_length=1, max_length=2000)


class WithRequestId(BaseModel):
    request_id: Optional[str] = None


class JobCreateResponse(WithRequestId):
    job_id: str
    status: JobStatus


class JobStatusResponse(BaseModel):
    status: JobStatus
    result: Any = None
    error: Optional[str] = None


class JobStatsResponse(BaseModel):
    pending: int
    processing: int
    complete: int
    error: int
    in_flight: int
    total: int
    max_queue_size: int


class CacheStatsResponse(BaseModel):
    size: int
    max_size: int


class CacheInvalidateResponse(BaseModel):
    removed: int
