"""Resolvers turning stored plan limits, overrides and allocations into values.

Each resolver answers for one source only and returns ``None`` when that
source has nothing to say; precedence between them lives in the engine.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .features import (
    UNLIMITED,
    FeatureDefinition,
    FeatureValue,
    LimitValue,
    Unlimited,
    decode_value,
)
from .models import (
    PLAN_STATUS_ACTIVE,
    Organization,
    OrganizationFeatureOverride,
    OrganizationPlan,
    Plan,
    PlanLimit,
    Workspace,
    WorkspaceFeatureLimit,
    as_utc,
)

logger = logging.getLogger(__name__)


class PlanLimitResolver:
    def __init__(self, db: Session) -> None:
        self.db = db

    def current_plan(self, organization: Organization, now: datetime) -> Plan | None:
        """Highest-priority plan the organization holds at ``now``.

        A holding counts while it is active, not revoked, started and not
        ended, and the plan itself is still offered.
        """
        now = as_utc(now)
        return self.db.scalar(
            select(Plan)
            .join(OrganizationPlan, OrganizationPlan.plan_id == Plan.id)
            .where(
                OrganizationPlan.organization_id == organization.id,
                OrganizationPlan.status == PLAN_STATUS_ACTIVE,
                OrganizationPlan.is_revoked.is_(False),
                OrganizationPlan.started_at <= now,
                or_(
                    OrganizationPlan.ends_at.is_(None),
                    OrganizationPlan.ends_at > now,
                ),
                Plan.is_active.is_(True),
            )
            .order_by(
                Plan.priority.desc(),
                OrganizationPlan.started_at.desc(),
                OrganizationPlan.id.desc(),
            )
            .limit(1)
        )

    def resolve(self, plan: Plan | None, definition: FeatureDefinition) -> FeatureValue | None:
        if plan is None:
            return None
        raw = self.db.scalar(
            select(PlanLimit.value).where(
                PlanLimit.plan_id == plan.id,
                PlanLimit.feature == definition.key.value,
            )
        )
        if raw is None:
            return None
        return decode_value(raw, definition.type)

    def granted_features(self, plan: Plan | None) -> list[str]:
        if plan is None:
            return []
        return list(self.db.scalars(select(PlanLimit.feature).where(PlanLimit.plan_id == plan.id)).all())


class OverrideResolver:
    def __init__(self, db: Session) -> None:
        self.db = db

    def active_override(
        self,
        organization: Organization,
        feature: str,
        now: datetime,
    ) -> OrganizationFeatureOverride | None:
        """Latest non-expired override row.

        Rows are unique per (organization, feature); the ordering only makes
        the choice deterministic for data written before that constraint.
        """
        now = as_utc(now)
        return self.db.scalar(
            select(OrganizationFeatureOverride)
            .where(
                OrganizationFeatureOverride.organization_id == organization.id,
                OrganizationFeatureOverride.feature == feature,
                or_(
                    OrganizationFeatureOverride.expires_at.is_(None),
                    OrganizationFeatureOverride.expires_at > now,
                ),
            )
            .order_by(
                OrganizationFeatureOverride.updated_at.desc(),
                OrganizationFeatureOverride.id.desc(),
            )
            .limit(1)
        )

    def resolve(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        now: datetime,
    ) -> FeatureValue | None:
        override = self.active_override(organization, definition.key.value, now)
        if override is None:
            return None
        return decode_value(override.value, definition.type)

    def active_features(self, organization: Organization, now: datetime) -> list[str]:
        now = as_utc(now)
        return list(
            self.db.scalars(
                select(OrganizationFeatureOverride.feature)
                .where(
                    OrganizationFeatureOverride.organization_id == organization.id,
                    or_(
                        OrganizationFeatureOverride.expires_at.is_(None),
                        OrganizationFeatureOverride.expires_at > now,
                    ),
                )
                .distinct()
            ).all()
        )


class WorkspaceAllocationResolver:
    def __init__(self, db: Session) -> None:
        self.db = db

    def resolve(self, workspace: Workspace, definition: FeatureDefinition) -> FeatureValue | None:
        if definition.is_boolean or not definition.is_workspace_scoped:
            return None
        allocated = self.db.scalar(
            select(WorkspaceFeatureLimit.allocated).where(
                WorkspaceFeatureLimit.workspace_id == workspace.id,
                WorkspaceFeatureLimit.feature == definition.key.value,
            )
        )
        if allocated is None:
            return None
        if allocated == UNLIMITED:
            return Unlimited()
        if allocated < 0:
            logger.error(
                "Invalid allocation %s for workspace %s feature %s",
                allocated,
                workspace.id,
                definition.key.value,
            )
            return None
        return LimitValue(allocated)
