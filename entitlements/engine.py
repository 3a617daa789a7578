"""Entitlement engine: answers "may this organization use this much of X".

Resolution order for a limit is workspace allocation (workspace-scoped
features read for one workspace), then an active organization override,
then the current plan. ``-1`` means unlimited wherever a limit is returned.

Usage:
    engine = EntitlementEngine(db)
    if engine.consume_feature(organization, FeatureKey.WORKSPACES):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from .catalog import FeatureCatalog
from .features import (
    UNLIMITED,
    FeatureDefinition,
    FeatureKey,
    FeatureValue,
    grants_feature,
    limit_of,
)
from .models import Organization, Plan, Workspace, utc_now
from .resolvers import (
    OverrideResolver,
    PlanLimitResolver,
    WorkspaceAllocationResolver,
)
from .usage import UsageTracker

logger = logging.getLogger(__name__)

Feature = FeatureKey | str


@dataclass(frozen=True)
class FeatureUsage:
    feature: str
    name: str
    type: str
    tracking_scope: str
    limit: int | None
    current: int
    remaining: int | None
    percentage: float
    has_feature: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _check_amount(amount: int) -> None:
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}.")


class EntitlementEngine:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock
        self.catalog = FeatureCatalog(db)
        self.plans = PlanLimitResolver(db)
        self.overrides = OverrideResolver(db)
        self.allocations = WorkspaceAllocationResolver(db)
        self.usage = UsageTracker(db, clock)

    # resolution

    def current_plan(self, organization: Organization) -> Plan | None:
        return self.plans.current_plan(organization, self.clock())

    def _organization_value(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        plan: Plan | None,
    ) -> FeatureValue | None:
        value = self.overrides.resolve(organization, definition, self.clock())
        if value is not None:
            return value
        return self.plans.resolve(plan, definition)

    def _resolve(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None,
    ) -> FeatureValue | None:
        value = self._organization_value(organization, definition, self.current_plan(organization))
        if value is None:
            return None
        if workspace is not None and definition.is_workspace_scoped:
            allocation = self.allocations.resolve(workspace, definition)
            if allocation is not None:
                return allocation
        return value

    def _limit(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None,
    ) -> int | None:
        if definition.is_boolean:
            return None
        return limit_of(self._resolve(organization, definition, workspace))

    # reads

    def has_feature(self, organization: Organization, feature: Feature) -> bool:
        """Whether the feature is granted at all, independent of remaining quota."""
        definition = self.catalog.get_definition(feature)
        if definition is None:
            return False
        value = self._organization_value(organization, definition, self.current_plan(organization))
        return grants_feature(value)

    def get_limit(
        self,
        organization: Organization,
        feature: Feature,
        workspace: Workspace | None = None,
    ) -> int | None:
        """Effective limit: ``-1`` for unlimited, None when absent or boolean."""
        definition = self.catalog.get_definition(feature)
        if definition is None:
            return None
        return self._limit(organization, definition, workspace)

    def get_current_usage(
        self,
        organization: Organization,
        feature: Feature,
        workspace: Workspace | None = None,
    ) -> int:
        definition = self.catalog.get_definition(feature)
        if definition is None or definition.is_boolean:
            return 0
        return self.usage.current_usage(organization, definition, workspace)

    def can_use(
        self,
        organization: Organization,
        feature: Feature,
        amount: int = 1,
        workspace: Workspace | None = None,
    ) -> bool:
        _check_amount(amount)
        definition = self.catalog.get_definition(feature)
        if definition is None:
            return False
        if definition.is_boolean:
            return self.has_feature(organization, definition.key)

        limit = self._limit(organization, definition, workspace)
        if limit is None:
            return False
        if limit == UNLIMITED:
            return True
        current = self.usage.current_usage(organization, definition, workspace)
        return current + amount <= limit

    def get_remaining_usage(
        self,
        organization: Organization,
        feature: Feature,
        workspace: Workspace | None = None,
    ) -> int | None:
        """Quota left; None when unlimited or not metered, 0 when not granted."""
        definition = self.catalog.get_definition(feature)
        if definition is None:
            return 0
        if definition.is_boolean:
            return None
        limit = self._limit(organization, definition, workspace)
        if limit is None:
            return 0
        if limit == UNLIMITED:
            return None
        current = self.usage.current_usage(organization, definition, workspace)
        return max(0, limit - current)

    def get_usage_percentage(
        self,
        organization: Organization,
        feature: Feature,
        workspace: Workspace | None = None,
    ) -> float:
        definition = self.catalog.get_definition(feature)
        if definition is None or definition.is_boolean:
            return 0.0
        limit = self._limit(organization, definition, workspace)
        if limit is None or limit == UNLIMITED:
            return 0.0
        current = self.usage.current_usage(organization, definition, workspace)
        if limit == 0:
            return 100.0 if current > 0 else 0.0
        return min(100.0, current * 100 / limit)

    # writes

    def _lock_organization(self, organization: Organization) -> None:
        # row lock held until the caller's transaction ends; no-op on SQLite
        self.db.scalar(
            select(Organization.id).where(Organization.id == organization.id).with_for_update()
        )

    def consume_feature(
        self,
        organization: Organization,
        feature: Feature,
        amount: int = 1,
        workspace: Workspace | None = None,
    ) -> bool:
        """Record ``amount`` of usage if it fits the remaining quota.

        Returns False without writing anything when it does not fit. Boolean
        features are never counted; the result is just ``has_feature``.
        """
        _check_amount(amount)
        definition = self.catalog.get_definition(feature)
        if definition is None:
            return False
        if definition.is_boolean:
            return self.has_feature(organization, definition.key)

        self._lock_organization(organization)
        limit = self._limit(organization, definition, workspace)
        if limit is None:
            logger.info(
                "Rejected %s of %s for organization %s: feature not granted",
                amount,
                definition.key.value,
                organization.id,
            )
            return False

        if limit == UNLIMITED:
            self.usage.increment(organization, definition, workspace, amount)
            logger.debug("Consumed %s of %s for organization %s", amount, definition.key.value, organization.id)
            return True

        current = self.usage.current_usage(organization, definition, workspace)
        if current + amount > limit:
            logger.info(
                "Rejected %s of %s for organization %s: usage %s of %s",
                amount,
                definition.key.value,
                organization.id,
                current,
                limit,
            )
            return False

        new_usage = self.usage.increment(organization, definition, workspace, amount, limit=limit)
        if new_usage is None:
            logger.info(
                "Rejected %s of %s for organization %s: counter moved past %s",
                amount,
                definition.key.value,
                organization.id,
                limit,
            )
            return False

        logger.debug(
            "Consumed %s of %s for organization %s (counter now %s)",
            amount,
            definition.key.value,
            organization.id,
            new_usage,
        )
        return True

    def unconsume_feature(
        self,
        organization: Organization,
        feature: Feature,
        amount: int = 1,
        workspace: Workspace | None = None,
    ) -> None:
        """Release previously consumed usage; the counter never drops below zero."""
        _check_amount(amount)
        definition = self.catalog.get_definition(feature)
        if definition is None or definition.is_boolean:
            return
        new_usage = self.usage.decrement(organization, definition, workspace, amount)
        logger.debug(
            "Unconsumed %s of %s for organization %s (counter now %s)",
            amount,
            definition.key.value,
            organization.id,
            new_usage,
        )

    # aggregation

    def get_usage_summary(
        self,
        organization: Organization,
        workspace: Workspace | None = None,
    ) -> dict[str, FeatureUsage]:
        plan = self.current_plan(organization)
        relevant = set(self.plans.granted_features(plan))
        relevant.update(self.overrides.active_features(organization, self.clock()))

        summary: dict[str, FeatureUsage] = {}
        for definition in self.catalog.all_definitions():
            if definition.key.value not in relevant:
                continue
            context = workspace if definition.is_workspace_scoped else None
            key = definition.key
            limit = self.get_limit(organization, key, context)
            summary[key.value] = FeatureUsage(
                feature=key.value,
                name=definition.name,
                type=definition.type.value,
                tracking_scope=definition.scope.value,
                limit=limit,
                current=self.get_current_usage(organization, key, context),
                remaining=self.get_remaining_usage(organization, key, context),
                percentage=round(self.get_usage_percentage(organization, key, context), 2),
                has_feature=self.has_feature(organization, key),
            )
        return summary
