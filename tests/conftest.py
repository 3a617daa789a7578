from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from entitlements import db
from entitlements.admin import allocate, assign_plan, set_override
from entitlements.catalog import FEATURE_DEFINITIONS, seed_catalog
from entitlements.engine import EntitlementEngine
from entitlements.features import FeatureKey, encode_value
from entitlements.models import Organization, Plan, PlanLimit, Workspace


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class TenantBuilder:
    """Creates plans, organizations and grants for a test."""

    def __init__(self, session: Session, clock: Clock) -> None:
        self.session = session
        self.clock = clock
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def plan(self, limits: dict[FeatureKey, bool | int | str], slug: str | None = None) -> Plan:
        plan = Plan(slug=slug or self._next("plan"), name="Custom")
        self.session.add(plan)
        self.session.flush()
        for key, value in limits.items():
            definition = FEATURE_DEFINITIONS[key]
            self.session.add(
                PlanLimit(
                    plan_id=plan.id,
                    feature=key.value,
                    value=encode_value(value),
                    type=definition.type.value,
                    tracking_scope=definition.scope.value,
                )
            )
        self.session.flush()
        return plan

    def organization(self, plan: str | Plan | None = "free", slug: str | None = None) -> Organization:
        organization = Organization(name="Acme Inc", slug=slug or self._next("org"))
        self.session.add(organization)
        self.session.flush()
        if plan is not None:
            slug = plan.slug if isinstance(plan, Plan) else plan
            assign_plan(self.session, organization, slug, now=self.clock.now)
        return organization

    def workspace(self, organization: Organization, name: str = "Main") -> Workspace:
        workspace = Workspace(organization_id=organization.id, name=name)
        self.session.add(workspace)
        self.session.flush()
        self.session.refresh(workspace)
        return workspace

    def override(
        self,
        organization: Organization,
        feature: FeatureKey,
        value: bool | int | str,
        expires_in: timedelta | None = None,
    ):
        expires_at = self.clock.now + expires_in if expires_in is not None else None
        return set_override(
            self.session,
            organization,
            feature,
            value,
            reason="test",
            expires_at=expires_at,
        )

    def allocation(self, workspace: Workspace, feature: FeatureKey, allocated: int):
        return allocate(self.session, workspace, feature, allocated)


@pytest.fixture()
def session(tmp_path):
    db.reset_engine(f"sqlite:///{tmp_path}/test.db")
    db.init_db()
    session = db.SessionLocal()
    seed_catalog(session)
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> Clock:
    return Clock(datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def engine(session: Session, clock: Clock) -> EntitlementEngine:
    return EntitlementEngine(session, clock=clock)


@pytest.fixture()
def builder(session: Session, clock: Clock) -> TenantBuilder:
    return TenantBuilder(session, clock)