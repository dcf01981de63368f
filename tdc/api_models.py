from __future__ import annotations

from pydantic import BaseModel, Field


class TierRelease(BaseModel):
    artifact: str = Field(..., min_length=1, description="Immutable artifact reference, e.g. image name:tag")
    batch_size: int | None = Field(None, ge=1, le=100, description="New instances started per wave")
    max_unavailable: int | None = Field(None, ge=0, le=100, description="Eligible instances that may be lost during the plan")
    labels: dict[str, str] = Field(default_factory=dict)


class ReleaseRequest(BaseModel):
    release_id: str | None = Field(None, description="Build identifier; generated when omitted")
    tiers: dict[str, TierRelease] = Field(..., min_length=1, description="Tier name -> revision to deploy")


class PromoteRequest(BaseModel):
    reason: str = Field("manual", max_length=200)


class ProvisionRequest(BaseModel):
    artifact: str = Field(..., min_length=1)
    count: int = Field(1, ge=1, le=100, description="Instances to start at the artifact")
    labels: dict[str, str] = Field(default_factory=dict)
