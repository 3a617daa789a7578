from __future__ import annotations

import pytest
from sqlalchemy import func, select

from entitlements.catalog import PLAN_LIMITS, FeatureCatalog, seed_catalog, validate_catalog
from entitlements.errors import CatalogMismatchError
from entitlements.features import FeatureKey, FeatureType, TrackingScope
from entitlements.models import Plan, PlanFeature, PlanLimit


def test_seed_is_idempotent(session) -> None:
    seed_catalog(session)
    seed_catalog(session)

    assert session.scalar(select(func.count()).select_from(PlanFeature)) == len(FeatureKey)
    assert session.scalar(select(func.count()).select_from(Plan)) == len(PLAN_LIMITS)
    assert session.scalar(select(func.count()).select_from(PlanLimit)) == len(PLAN_LIMITS) * len(FeatureKey)


def test_seeded_catalog_validates(session) -> None:
    validate_catalog(session)


def test_validate_reports_missing_and_mismatched_rows(session) -> None:
    session.delete(session.scalar(select(PlanFeature).where(PlanFeature.feature == "priority_support")))
    connections = session.scalar(select(PlanFeature).where(PlanFeature.feature == "connections_per_workspace"))
    connections.tracking_scope = TrackingScope.ORGANIZATION.value
    session.flush()

    with pytest.raises(CatalogMismatchError) as excinfo:
        validate_catalog(session)

    problems = excinfo.value.problems
    assert any(problem.startswith("priority_support: missing") for problem in problems)
    assert any(problem.startswith("connections_per_workspace: tracking scope") for problem in problems)


def test_validate_warns_about_rows_without_a_key(session, caplog: pytest.LogCaptureFixture) -> None:
    session.add(PlanFeature(feature="legacy_reports", name="Legacy", type=FeatureType.BOOLEAN.value))
    session.flush()

    validate_catalog(session)

    assert "legacy_reports" in caplog.text


def test_catalog_lookups(session) -> None:
    catalog = FeatureCatalog(session)

    definition = catalog.get_definition("connections_per_workspace")
    assert definition is not None
    assert definition.is_workspace_scoped
    assert catalog.get_definition("does_not_exist") is None

    ordered = [definition.key for definition in catalog.all_definitions()]
    assert ordered[0] is FeatureKey.TEAM_MEMBERS
    assert ordered[-1] is FeatureKey.PRIORITY_SUPPORT


def test_inactive_entries_are_hidden(session) -> None:
    row = session.scalar(select(PlanFeature).where(PlanFeature.feature == "data_retention_days"))
    row.is_active = False
    session.flush()

    catalog = FeatureCatalog(session)
    assert catalog.get_definition(FeatureKey.DATA_RETENTION_DAYS) is None
    assert FeatureKey.DATA_RETENTION_DAYS not in [definition.key for definition in catalog.all_definitions()]
