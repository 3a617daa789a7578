"""Feature catalog: the static registry, plan seed data and catalog lookups."""

from __future__ import annotations

import logging
from typing import Final

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import CatalogMismatchError
from .features import (
    FeatureDefinition,
    FeatureKey,
    FeatureType,
    TrackingPeriod,
    TrackingScope,
)
from .models import Plan, PlanFeature, PlanLimit

logger = logging.getLogger(__name__)

FEATURE_DEFINITIONS: Final[dict[FeatureKey, FeatureDefinition]] = {
    definition.key: definition
    for definition in (
        FeatureDefinition(
            key=FeatureKey.TEAM_MEMBERS,
            name="Team Members",
            description="Number of team members per organization",
            type=FeatureType.LIMIT,
            category="team",
            display_order=1,
        ),
        FeatureDefinition(
            key=FeatureKey.WORKSPACES,
            name="Workspaces",
            description="Number of workspaces per organization",
            type=FeatureType.LIMIT,
            category="organization",
            display_order=2,
        ),
        FeatureDefinition(
            key=FeatureKey.CONNECTIONS_PER_WORKSPACE,
            name="Connections per Workspace",
            description="Number of external service connections per workspace",
            type=FeatureType.LIMIT,
            scope=TrackingScope.WORKSPACE,
            category="connections",
            display_order=3,
        ),
        FeatureDefinition(
            key=FeatureKey.API_RATE_LIMIT,
            name="API Rate Limit",
            description="API requests per minute",
            type=FeatureType.LIMIT,
            category="api",
            display_order=4,
        ),
        FeatureDefinition(
            key=FeatureKey.UNIQUE_VISITORS,
            name="Monthly Active Users",
            description="Number of monthly active users",
            type=FeatureType.LIMIT,
            period=TrackingPeriod.MONTHLY,
            category="usage",
            display_order=5,
        ),
        FeatureDefinition(
            key=FeatureKey.DATA_RETENTION_DAYS,
            name="Data Retention",
            description="Days of data retention",
            type=FeatureType.LIMIT,
            category="storage",
            display_order=6,
        ),
        FeatureDefinition(
            key=FeatureKey.PRIORITY_SUPPORT,
            name="Priority Support",
            description="Access to priority customer support",
            type=FeatureType.BOOLEAN,
            category="support",
            display_order=7,
        ),
    )
}

PLAN_NAMES: Final[dict[str, str]] = {
    "free": "Free",
    "early-bird-lifetime": "Early Bird Lifetime",
    "starter-yearly": "Starter",
    "pro-yearly": "Pro",
    "business-yearly": "Business",
}

PLAN_PRIORITIES: Final[dict[str, int]] = {
    "free": 997,
    "early-bird-lifetime": 998,
    "starter-yearly": 999,
    "pro-yearly": 1000,
    "business-yearly": 1001,
}

PLAN_LIMITS: Final[dict[str, dict[FeatureKey, str]]] = {
    "free": {
        FeatureKey.TEAM_MEMBERS: "5",
        FeatureKey.WORKSPACES: "1",
        FeatureKey.CONNECTIONS_PER_WORKSPACE: "1",
        FeatureKey.API_RATE_LIMIT: "60",
        FeatureKey.UNIQUE_VISITORS: "1000",
        FeatureKey.DATA_RETENTION_DAYS: "7",
        FeatureKey.PRIORITY_SUPPORT: "false",
    },
    "early-bird-lifetime": {
        FeatureKey.TEAM_MEMBERS: "-1",
        FeatureKey.WORKSPACES: "-1",
        FeatureKey.CONNECTIONS_PER_WORKSPACE: "-1",
        FeatureKey.API_RATE_LIMIT: "600",
        FeatureKey.UNIQUE_VISITORS: "100000",
        FeatureKey.DATA_RETENTION_DAYS: "90",
        FeatureKey.PRIORITY_SUPPORT: "true",
    },
    "starter-yearly": {
        FeatureKey.TEAM_MEMBERS: "10",
        FeatureKey.WORKSPACES: "3",
        FeatureKey.CONNECTIONS_PER_WORKSPACE: "3",
        FeatureKey.API_RATE_LIMIT: "120",
        FeatureKey.UNIQUE_VISITORS: "10000",
        FeatureKey.DATA_RETENTION_DAYS: "30",
        FeatureKey.PRIORITY_SUPPORT: "false",
    },
    "pro-yearly": {
        FeatureKey.TEAM_MEMBERS: "50",
        FeatureKey.WORKSPACES: "10",
        FeatureKey.CONNECTIONS_PER_WORKSPACE: "10",
        FeatureKey.API_RATE_LIMIT: "300",
        FeatureKey.UNIQUE_VISITORS: "50000",
        FeatureKey.DATA_RETENTION_DAYS: "90",
        FeatureKey.PRIORITY_SUPPORT: "true",
    },
    "business-yearly": {
        FeatureKey.TEAM_MEMBERS: "-1",
        FeatureKey.WORKSPACES: "-1",
        FeatureKey.CONNECTIONS_PER_WORKSPACE: "-1",
        FeatureKey.API_RATE_LIMIT: "600",
        FeatureKey.UNIQUE_VISITORS: "-1",
        FeatureKey.DATA_RETENTION_DAYS: "365",
        FeatureKey.PRIORITY_SUPPORT: "true",
    },
}


def _definition_from_row(row: PlanFeature) -> FeatureDefinition | None:
    key = FeatureKey.parse(row.feature)
    if key is None:
        return None
    return FeatureDefinition(
        key=key,
        name=row.name,
        description=row.description or "",
        type=FeatureType(row.type),
        period=TrackingPeriod(row.period),
        scope=TrackingScope(row.tracking_scope),
        category=row.category,
        display_order=row.display_order,
        active=row.is_active,
    )


class FeatureCatalog:
    """Read-only lookups against the seeded ``plan_features`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self._cache: dict[FeatureKey, FeatureDefinition | None] = {}

    def get_definition(self, feature: FeatureKey | str) -> FeatureDefinition | None:
        """Definition for ``feature``; None when unknown or inactive."""
        key = FeatureKey.parse(feature)
        if key is None:
            logger.warning("Unknown feature key %r", feature)
            return None
        if key not in self._cache:
            row = self.db.scalar(select(PlanFeature).where(PlanFeature.feature == key.value))
            definition = _definition_from_row(row) if row else None
            self._cache[key] = definition if definition and definition.active else None
        return self._cache[key]

    def all_definitions(self) -> list[FeatureDefinition]:
        rows = self.db.scalars(
            select(PlanFeature)
            .where(PlanFeature.is_active.is_(True))
            .order_by(PlanFeature.display_order, PlanFeature.feature)
        ).all()
        definitions = []
        for row in rows:
            definition = _definition_from_row(row)
            if definition is not None:
                definitions.append(definition)
        return definitions


def seed_catalog(db: Session) -> None:
    """Insert missing catalog entries, plans and plan limits.

    Existing rows are left untouched so the seed can run on every startup.
    """
    existing_features = set(db.scalars(select(PlanFeature.feature)).all())
    for definition in FEATURE_DEFINITIONS.values():
        if definition.key.value in existing_features:
            continue
        db.add(
            PlanFeature(
                feature=definition.key.value,
                name=definition.name,
                description=definition.description,
                type=definition.type.value,
                period=definition.period.value,
                tracking_scope=definition.scope.value,
                category=definition.category,
                display_order=definition.display_order,
                is_active=definition.active,
            )
        )
    db.flush()

    for slug, limits in PLAN_LIMITS.items():
        plan = db.scalar(select(Plan).where(Plan.slug == slug))
        if plan is None:
            plan = Plan(
                slug=slug,
                name=PLAN_NAMES.get(slug, slug),
                priority=PLAN_PRIORITIES.get(slug, 0),
            )
            db.add(plan)
            db.flush()
            logger.info("Seeded plan %s", slug)

        seeded = set(db.scalars(select(PlanLimit.feature).where(PlanLimit.plan_id == plan.id)).all())
        for key, value in limits.items():
            if key.value in seeded:
                continue
            definition = FEATURE_DEFINITIONS[key]
            db.add(
                PlanLimit(
                    plan_id=plan.id,
                    feature=key.value,
                    value=value,
                    type=definition.type.value,
                    tracking_scope=definition.scope.value,
                )
            )
    db.flush()


def validate_catalog(db: Session) -> None:
    """Fail fast when the code's feature keys and the seeded catalog disagree."""
    rows = {row.feature: row for row in db.scalars(select(PlanFeature)).all()}
    problems: list[str] = []
    for key, definition in FEATURE_DEFINITIONS.items():
        row = rows.get(key.value)
        if row is None:
            problems.append(f"{key.value}: missing from plan_features")
            continue
        if row.type != definition.type.value:
            problems.append(f"{key.value}: type {row.type!r} != {definition.type.value!r}")
        if row.tracking_scope != definition.scope.value:
            problems.append(
                f"{key.value}: tracking scope {row.tracking_scope!r} != {definition.scope.value!r}"
            )
    if problems:
        raise CatalogMismatchError(problems)
    unknown = sorted(set(rows) - {key.value for key in FeatureKey})
    if unknown:
        logger.warning("Catalog rows without a feature key: %s", ", ".join(unknown))
