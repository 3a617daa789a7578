"""Pydantic schemas for API requests and responses."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    slug: str = Field(
        min_length=3,
        max_length=80,
        pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$",
    )
    plan: str | None = Field(default=None, max_length=80)


class OrganizationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    plan: str | None
    created_at: datetime


class PlanAssignRequest(BaseModel):
    plan: str = Field(min_length=1, max_length=80)
    ends_at: datetime | None = None


class OverrideRequest(BaseModel):
    value: bool | int | str
    reason: str | None = Field(default=None, max_length=255)
    expires_at: datetime | None = None


class OverrideOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    feature: str
    value: str
    reason: str | None
    expires_at: datetime | None


class WorkspaceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class WorkspaceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    name: str
    created_at: datetime


class ConnectionCreateRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=1, max_length=200)


class ConnectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    workspace_id: int
    provider: str
    name: str
    created_at: datetime


class AllocationRequest(BaseModel):
    allocated: int = Field(ge=-1)


class AllocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    workspace_id: int
    feature: str
    allocated: int


class FeatureUsageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    feature: str
    name: str
    type: str
    tracking_scope: str
    limit: int | None
    current: int
    remaining: int | None
    percentage: float
    has_feature: bool


class FeatureCheckOut(BaseModel):
    feature: str
    plan: str | None
    has_feature: bool
    limit: int | None
    current: int
    remaining: int | None
    percentage: float
    can_use: bool


class UsageSummaryOut(BaseModel):
    organization: str
    plan: str | None
    workspace_id: int | None
    features: dict[str, FeatureUsageOut]
