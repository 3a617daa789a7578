"""FastAPI app exposing quota reads, plan administration and lifecycle hooks."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .admin import allocate, assign_plan, clear_override, release_allocation, revoke_plan, set_override
from .catalog import seed_catalog, validate_catalog
from .config import configure_logging, default_plan_slug, seed_on_startup
from .db import get_db, init_db, session_scope
from .engine import EntitlementEngine
from .errors import InvalidAllocationError, PlanNotFoundError, QuotaExceededError
from .features import FeatureKey
from .lifecycle import create_connection, create_workspace, delete_connection, delete_workspace
from .models import Connection, Organization, Workspace
from .ratelimit import RateLimitHeadersMiddleware
from .schemas import (
    AllocationOut,
    AllocationRequest,
    ConnectionCreateRequest,
    ConnectionOut,
    FeatureCheckOut,
    FeatureUsageOut,
    OrganizationCreateRequest,
    OrganizationOut,
    OverrideOut,
    OverrideRequest,
    PlanAssignRequest,
    UsageSummaryOut,
    WorkspaceCreateRequest,
    WorkspaceOut,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    init_db()
    if seed_on_startup():
        with session_scope() as db:
            seed_catalog(db)
            validate_catalog(db)
    yield


app = FastAPI(
    title="Plan Entitlements API",
    description="Plan-based feature metering: limits, overrides, allocations and usage counters per tenant.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(RateLimitHeadersMiddleware)


def get_engine(db: Session = Depends(get_db)) -> EntitlementEngine:
    return EntitlementEngine(db)


def get_organization(slug: str, db: Session = Depends(get_db)) -> Organization:
    organization = db.scalar(select(Organization).where(Organization.slug == slug))
    if not organization:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found.",
        )
    return organization


def get_workspace(
    workspace_id: int,
    organization: Organization = Depends(get_organization),
    db: Session = Depends(get_db),
) -> Workspace:
    workspace = db.get(Workspace, workspace_id)
    if not workspace or workspace.organization_id != organization.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Workspace not found.",
        )
    return workspace


def require_feature(feature_key: str) -> FeatureKey:
    key = FeatureKey.parse(feature_key)
    if key is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unknown feature.",
        )
    return key


def optional_workspace(
    db: Session,
    organization: Organization,
    workspace_id: int | None,
) -> Workspace | None:
    if workspace_id is None:
        return None
    workspace = db.get(Workspace, workspace_id)
    if not workspace or workspace.organization_id != organization.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Workspace not found.",
        )
    return workspace


def serialize_organization(engine: EntitlementEngine, organization: Organization) -> OrganizationOut:
    plan = engine.current_plan(organization)
    return OrganizationOut(
        id=organization.id,
        name=organization.name,
        slug=organization.slug,
        plan=plan.slug if plan else None,
        created_at=organization.created_at,
    )


def quota_exceeded(db: Session, exc: QuotaExceededError) -> HTTPException:
    db.rollback()
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=exc.to_dict(),
    )


@app.get("/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/organizations", response_model=OrganizationOut, status_code=status.HTTP_201_CREATED)
def create_organization(
    payload: OrganizationCreateRequest,
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> OrganizationOut:
    existing = db.scalar(select(Organization).where(Organization.slug == payload.slug))
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Organization slug already exists.",
        )

    organization = Organization(name=payload.name.strip(), slug=payload.slug.strip())
    db.add(organization)
    try:
        db.flush()
        assign_plan(db, organization, payload.plan or default_plan_slug())
        db.commit()
    except PlanNotFoundError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from None
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Unable to create organization with provided data.",
        ) from None

    db.refresh(organization)
    return serialize_organization(engine, organization)


@app.get("/organizations/{slug}", response_model=OrganizationOut)
def get_organization_detail(
    organization: Organization = Depends(get_organization),
    engine: EntitlementEngine = Depends(get_engine),
) -> OrganizationOut:
    return serialize_organization(engine, organization)


@app.put("/organizations/{slug}/plan", response_model=OrganizationOut)
def change_plan(
    payload: PlanAssignRequest,
    organization: Organization = Depends(get_organization),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> OrganizationOut:
    try:
        assign_plan(db, organization, payload.plan, ends_at=payload.ends_at)
    except PlanNotFoundError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from None
    db.commit()
    return serialize_organization(engine, organization)


@app.delete("/organizations/{slug}/plans/{plan_slug}", response_model=OrganizationOut)
def remove_plan(
    plan_slug: str,
    organization: Organization = Depends(get_organization),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> OrganizationOut:
    try:
        revoked = revoke_plan(db, organization, plan_slug)
    except PlanNotFoundError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from None
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization does not hold this plan.",
        )
    db.commit()
    return serialize_organization(engine, organization)


@app.get("/organizations/{slug}/usage", response_model=UsageSummaryOut)
def usage_summary(
    workspace_id: int | None = Query(default=None),
    organization: Organization = Depends(get_organization),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> UsageSummaryOut:
    workspace = optional_workspace(db, organization, workspace_id)
    plan = engine.current_plan(organization)
    summary = engine.get_usage_summary(organization, workspace)
    return UsageSummaryOut(
        organization=organization.slug,
        plan=plan.slug if plan else None,
        workspace_id=workspace.id if workspace else None,
        features={key: FeatureUsageOut.model_validate(row) for key, row in summary.items()},
    )


@app.get("/organizations/{slug}/features/{feature_key}", response_model=FeatureCheckOut)
def check_feature(
    feature_key: str,
    amount: int = Query(default=1, ge=0),
    workspace_id: int | None = Query(default=None),
    organization: Organization = Depends(get_organization),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> FeatureCheckOut:
    key = require_feature(feature_key)
    workspace = optional_workspace(db, organization, workspace_id)
    plan = engine.current_plan(organization)
    return FeatureCheckOut(
        feature=key.value,
        plan=plan.slug if plan else None,
        has_feature=engine.has_feature(organization, key),
        limit=engine.get_limit(organization, key, workspace),
        current=engine.get_current_usage(organization, key, workspace),
        remaining=engine.get_remaining_usage(organization, key, workspace),
        percentage=round(engine.get_usage_percentage(organization, key, workspace), 2),
        can_use=engine.can_use(organization, key, amount, workspace),
    )


@app.put("/organizations/{slug}/overrides/{feature_key}", response_model=OverrideOut)
def put_override(
    feature_key: str,
    payload: OverrideRequest,
    organization: Organization = Depends(get_organization),
    db: Session = Depends(get_db),
) -> OverrideOut:
    key = require_feature(feature_key)
    try:
        override = set_override(
            db,
            organization,
            key,
            payload.value,
            reason=payload.reason,
            expires_at=payload.expires_at,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from None
    db.commit()
    return OverrideOut.model_validate(override)


@app.delete("/organizations/{slug}/overrides/{feature_key}", status_code=status.HTTP_204_NO_CONTENT)
def delete_override(
    feature_key: str,
    organization: Organization = Depends(get_organization),
    db: Session = Depends(get_db),
) -> None:
    key = require_feature(feature_key)
    if not clear_override(db, organization, key):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Override not found.",
        )
    db.commit()


@app.get("/organizations/{slug}/workspaces", response_model=list[WorkspaceOut])
def list_workspaces(
    organization: Organization = Depends(get_organization),
    db: Session = Depends(get_db),
) -> list[Workspace]:
    return list(
        db.scalars(
            select(Workspace).where(Workspace.organization_id == organization.id).order_by(Workspace.id)
        ).all()
    )


@app.post(
    "/organizations/{slug}/workspaces",
    response_model=WorkspaceOut,
    status_code=status.HTTP_201_CREATED,
)
def add_workspace(
    payload: WorkspaceCreateRequest,
    organization: Organization = Depends(get_organization),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> Workspace:
    try:
        workspace = create_workspace(db, engine, organization, payload.name)
    except QuotaExceededError as exc:
        raise quota_exceeded(db, exc) from None
    db.commit()
    db.refresh(workspace)
    return workspace


@app.delete("/organizations/{slug}/workspaces/{workspace_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_workspace(
    workspace: Workspace = Depends(get_workspace),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> None:
    delete_workspace(db, engine, workspace)
    db.commit()


@app.post(
    "/organizations/{slug}/workspaces/{workspace_id}/connections",
    response_model=ConnectionOut,
    status_code=status.HTTP_201_CREATED,
)
def add_connection(
    payload: ConnectionCreateRequest,
    workspace: Workspace = Depends(get_workspace),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> Connection:
    try:
        connection = create_connection(db, engine, workspace, payload.provider, payload.name)
    except QuotaExceededError as exc:
        raise quota_exceeded(db, exc) from None
    db.commit()
    db.refresh(connection)
    return connection


@app.delete(
    "/organizations/{slug}/workspaces/{workspace_id}/connections/{connection_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def remove_connection(
    connection_id: int,
    workspace: Workspace = Depends(get_workspace),
    engine: EntitlementEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> None:
    connection = db.get(Connection, connection_id)
    if not connection or connection.workspace_id != workspace.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found.",
        )
    delete_connection(db, engine, connection)
    db.commit()


@app.put(
    "/organizations/{slug}/workspaces/{workspace_id}/allocations/{feature_key}",
    response_model=AllocationOut,
)
def put_allocation(
    feature_key: str,
    payload: AllocationRequest,
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
) -> AllocationOut:
    key = require_feature(feature_key)
    try:
        limit = allocate(db, workspace, key, payload.allocated)
    except InvalidAllocationError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from None
    db.commit()
    return AllocationOut.model_validate(limit)


@app.delete(
    "/organizations/{slug}/workspaces/{workspace_id}/allocations/{feature_key}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_allocation(
    feature_key: str,
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
) -> None:
    key = require_feature(feature_key)
    if not release_allocation(db, workspace, key):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Allocation not found.",
        )
    db.commit()
