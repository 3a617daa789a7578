"""Administrative writes: plan assignment, overrides and workspace allocations."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .catalog import FeatureCatalog
from .errors import InvalidAllocationError, PlanNotFoundError, UnknownFeatureError
from .features import (
    UNLIMITED,
    BooleanValue,
    FeatureDefinition,
    FeatureKey,
    FeatureValue,
    decode_value,
    encode_value,
)
from .models import (
    PLAN_STATUS_ACTIVE,
    PLAN_STATUS_CANCELLED,
    Organization,
    OrganizationFeatureOverride,
    OrganizationPlan,
    Plan,
    Workspace,
    WorkspaceFeatureLimit,
    as_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


def normalize_plan_slug(slug: str | None) -> str | None:
    if not slug:
        return None
    return slug.strip().lower() or None


def _get_plan(db: Session, plan_slug: str) -> Plan:
    normalized = normalize_plan_slug(plan_slug)
    plan = db.scalar(select(Plan).where(Plan.slug == normalized)) if normalized else None
    if plan is None:
        raise PlanNotFoundError(plan_slug)
    return plan


def _held_plans(db: Session, organization: Organization, now: datetime) -> list[OrganizationPlan]:
    return list(
        db.scalars(
            select(OrganizationPlan).where(
                OrganizationPlan.organization_id == organization.id,
                OrganizationPlan.status == PLAN_STATUS_ACTIVE,
                OrganizationPlan.is_revoked.is_(False),
                or_(
                    OrganizationPlan.ends_at.is_(None),
                    OrganizationPlan.ends_at > now,
                ),
            )
        ).all()
    )


def assign_plan(
    db: Session,
    organization: Organization,
    plan_slug: str,
    *,
    ends_at: datetime | None = None,
    replace: bool = True,
    now: datetime | None = None,
) -> Plan:
    """Give the organization ``plan_slug`` starting at ``now``.

    With ``replace`` every plan it currently holds is cancelled first, so the
    new plan becomes the current one. Without it the plan is added alongside
    the others and the highest priority wins.
    """
    plan = _get_plan(db, plan_slug)
    now = as_utc(now) if now else utc_now()
    if replace:
        for held in _held_plans(db, organization, now):
            held.status = PLAN_STATUS_CANCELLED
            held.ends_at = now
            held.notes = f"Replaced by {plan.slug}"

    db.add(
        OrganizationPlan(
            organization_id=organization.id,
            plan_id=plan.id,
            started_at=now,
            ends_at=as_utc(ends_at) if ends_at else None,
        )
    )
    db.flush()
    logger.info("Organization %s attached plan %s (replace=%s)", organization.id, plan.slug, replace)
    return plan


def revoke_plan(
    db: Session,
    organization: Organization,
    plan_slug: str,
    *,
    now: datetime | None = None,
) -> int:
    """Revoke the organization's holdings of ``plan_slug``; returns how many."""
    plan = _get_plan(db, plan_slug)
    now = as_utc(now) if now else utc_now()
    revoked = 0
    for held in _held_plans(db, organization, now):
        if held.plan_id != plan.id:
            continue
        held.is_revoked = True
        held.revoked_at = now
        revoked += 1
    db.flush()
    if revoked:
        logger.info("Organization %s revoked plan %s", organization.id, plan.slug)
    return revoked


def _require_known(db: Session, feature: FeatureKey | str) -> FeatureDefinition:
    definition = FeatureCatalog(db).get_definition(feature)
    if definition is None:
        raise UnknownFeatureError(str(feature))
    return definition


def _is_boolean_input(value: FeatureValue | bool | int | str) -> bool:
    if isinstance(value, (bool, BooleanValue)):
        return True
    return isinstance(value, str) and value.strip().lower() in {"true", "false"}


def set_override(
    db: Session,
    organization: Organization,
    feature: FeatureKey | str,
    value: FeatureValue | bool | int | str,
    reason: str | None = None,
    expires_at: datetime | None = None,
) -> OrganizationFeatureOverride:
    """Create or replace the organization's override for ``feature``."""
    definition = _require_known(db, feature)
    if definition.is_boolean and not _is_boolean_input(value):
        raise ValueError(f"Feature '{definition.key.value}' takes true or false, got {value!r}.")
    if definition.is_boolean and isinstance(value, str):
        value = value.strip().lower()
    encoded = encode_value(value)
    if decode_value(encoded, definition.type) is None:
        raise ValueError(f"Invalid value {value!r} for feature '{definition.key.value}'.")

    override = db.scalar(
        select(OrganizationFeatureOverride).where(
            OrganizationFeatureOverride.organization_id == organization.id,
            OrganizationFeatureOverride.feature == definition.key.value,
        )
    )
    if override is None:
        override = OrganizationFeatureOverride(
            organization_id=organization.id,
            feature=definition.key.value,
            value=encoded,
        )
        db.add(override)
    override.value = encoded
    override.reason = reason
    override.expires_at = as_utc(expires_at) if expires_at else None
    db.flush()
    logger.info(
        "Override %s=%s for organization %s (expires %s)",
        definition.key.value,
        encoded,
        organization.id,
        expires_at.isoformat() if expires_at else "never",
    )
    return override


def clear_override(db: Session, organization: Organization, feature: FeatureKey | str) -> bool:
    key = FeatureKey.parse(feature)
    if key is None:
        return False
    override = db.scalar(
        select(OrganizationFeatureOverride).where(
            OrganizationFeatureOverride.organization_id == organization.id,
            OrganizationFeatureOverride.feature == key.value,
        )
    )
    if override is None:
        return False
    db.delete(override)
    db.flush()
    return True


def allocate(
    db: Session,
    workspace: Workspace,
    feature: FeatureKey | str,
    allocated: int,
) -> WorkspaceFeatureLimit:
    """Carve ``allocated`` out of the organization's limit for one workspace."""
    definition = _require_known(db, feature)
    if definition.is_boolean or not definition.is_workspace_scoped:
        raise InvalidAllocationError(f"Feature '{definition.key.value}' is not tracked per workspace.")
    if allocated < UNLIMITED:
        raise InvalidAllocationError(f"Allocation must be >= -1, got {allocated}.")

    limit = db.scalar(
        select(WorkspaceFeatureLimit).where(
            WorkspaceFeatureLimit.workspace_id == workspace.id,
            WorkspaceFeatureLimit.feature == definition.key.value,
        )
    )
    if limit is None:
        limit = WorkspaceFeatureLimit(
            workspace_id=workspace.id,
            organization_id=workspace.organization_id,
            feature=definition.key.value,
            allocated=allocated,
        )
        db.add(limit)
    limit.allocated = allocated
    db.flush()
    return limit


def release_allocation(db: Session, workspace: Workspace, feature: FeatureKey | str) -> bool:
    key = FeatureKey.parse(feature)
    if key is None:
        return False
    limit = db.scalar(
        select(WorkspaceFeatureLimit).where(
            WorkspaceFeatureLimit.workspace_id == workspace.id,
            WorkspaceFeatureLimit.feature == key.value,
        )
    )
    if limit is None:
        return False
    db.delete(limit)
    db.flush()
    return True
