from __future__ import annotations

import pytest
from sqlalchemy import select

from entitlements import db
from entitlements.admin import allocate, assign_plan, release_allocation, set_override
from entitlements.engine import EntitlementEngine
from entitlements.errors import InvalidAllocationError, PlanNotFoundError, QuotaExceededError, UnknownFeatureError
from entitlements.features import FeatureKey
from entitlements.lifecycle import create_connection, create_workspace, delete_connection, delete_workspace
from entitlements.models import Organization, OrganizationFeatureOverride, UsageTracking, Workspace


def test_workspace_quota_on_free_plan(session, engine, builder) -> None:
    organization = builder.organization("free")

    create_workspace(session, engine, organization, "Main")
    with pytest.raises(QuotaExceededError) as excinfo:
        create_workspace(session, engine, organization, "Second")

    assert excinfo.value.to_dict() == {
        "error": "quota_exceeded",
        "feature": "workspaces",
        "requested": 1,
        "current": 1,
        "limit": 1,
        "message": "Plan limit reached for 'workspaces' (1/1). Upgrade plan to add more.",
    }
    assert engine.get_current_usage(organization, FeatureKey.WORKSPACES) == 1


def test_deleting_a_workspace_returns_its_quota(session, engine, builder) -> None:
    organization = builder.organization("free")
    workspace = create_workspace(session, engine, organization, "Main")
    create_connection(session, engine, workspace, "stripe", "Payments")

    delete_workspace(session, engine, workspace)

    assert engine.get_current_usage(organization, FeatureKey.WORKSPACES) == 0
    assert engine.get_current_usage(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE) == 0
    assert session.scalars(select(Workspace)).all() == []
    assert engine.can_use(organization, FeatureKey.WORKSPACES)


def test_connection_quota_is_per_workspace(session, engine, builder) -> None:
    organization = builder.organization("starter-yearly")
    first = create_workspace(session, engine, organization, "First")
    second = create_workspace(session, engine, organization, "Second")

    for index in range(3):
        create_connection(session, engine, first, "github", f"repo-{index}")
    with pytest.raises(QuotaExceededError):
        create_connection(session, engine, first, "github", "repo-3")

    create_connection(session, engine, second, "github", "repo-a")
    assert engine.get_current_usage(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE, first) == 3
    assert engine.get_current_usage(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE, second) == 1


def test_deleting_a_connection_frees_a_slot(session, engine, builder) -> None:
    organization = builder.organization("free")
    workspace = create_workspace(session, engine, organization, "Main")
    connection = create_connection(session, engine, workspace, "slack", "Alerts")

    delete_connection(session, engine, connection)

    assert workspace.connections == []
    create_connection(session, engine, workspace, "slack", "Alerts again")
    assert engine.get_current_usage(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE, workspace) == 1


def test_failed_unit_of_work_rolls_back_the_counter(session, builder) -> None:
    organization = builder.organization("free", slug="rollback-co")
    session.commit()

    with pytest.raises(RuntimeError):
        with db.session_scope() as scoped:
            org = scoped.scalar(select(Organization).where(Organization.slug == "rollback-co"))
            create_workspace(scoped, EntitlementEngine(scoped), org, "Doomed")
            raise RuntimeError("downstream failure")

    assert session.scalars(select(UsageTracking)).all() == []
    assert session.scalars(select(Workspace).where(Workspace.organization_id == organization.id)).all() == []


def test_assign_unknown_plan(session, builder) -> None:
    organization = builder.organization("free")
    with pytest.raises(PlanNotFoundError):
        assign_plan(session, organization, "platinum")
    assert assign_plan(session, organization, " Pro-Yearly ").slug == "pro-yearly"


def test_override_is_replaced_not_duplicated(session, engine, builder) -> None:
    organization = builder.organization("free")

    set_override(session, organization, FeatureKey.TEAM_MEMBERS, 20, reason="sales deal")
    set_override(session, organization, FeatureKey.TEAM_MEMBERS, 30, reason="bigger deal")

    overrides = session.scalars(select(OrganizationFeatureOverride)).all()
    assert len(overrides) == 1
    assert overrides[0].reason == "bigger deal"
    assert engine.get_limit(organization, FeatureKey.TEAM_MEMBERS) == 30


def test_override_validation(session, builder) -> None:
    organization = builder.organization("free")
    with pytest.raises(ValueError):
        set_override(session, organization, FeatureKey.TEAM_MEMBERS, "plenty")
    with pytest.raises(ValueError):
        set_override(session, organization, FeatureKey.PRIORITY_SUPPORT, 20)
    with pytest.raises(ValueError):
        set_override(session, organization, FeatureKey.PRIORITY_SUPPORT, "-1")
    with pytest.raises(UnknownFeatureError):
        set_override(session, organization, "custom_feature", 10)

    assert set_override(session, organization, FeatureKey.PRIORITY_SUPPORT, "True").value == "true"


def test_allocation_validation(session, builder) -> None:
    organization = builder.organization("pro-yearly")
    workspace = builder.workspace(organization)

    with pytest.raises(InvalidAllocationError):
        allocate(session, workspace, FeatureKey.TEAM_MEMBERS, 3)
    with pytest.raises(InvalidAllocationError):
        allocate(session, workspace, FeatureKey.CONNECTIONS_PER_WORKSPACE, -4)

    allocate(session, workspace, FeatureKey.CONNECTIONS_PER_WORKSPACE, 2)
    limit = allocate(session, workspace, FeatureKey.CONNECTIONS_PER_WORKSPACE, 4)
    assert limit.allocated == 4


def test_released_allocation_falls_back_to_the_organization_limit(session, engine, builder) -> None:
    organization = builder.organization("pro-yearly")
    workspace = builder.workspace(organization)
    allocate(session, workspace, FeatureKey.CONNECTIONS_PER_WORKSPACE, 2)
    assert engine.get_limit(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE, workspace) == 2

    assert release_allocation(session, workspace, FeatureKey.CONNECTIONS_PER_WORKSPACE) is True
    assert engine.get_limit(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE, workspace) == 10
    assert release_allocation(session, workspace, FeatureKey.CONNECTIONS_PER_WORKSPACE) is False
    assert release_allocation(session, workspace, "custom_feature") is False
