"""Workspace and connection lifecycle hooks.

Creating a workspace or connection consumes quota and deleting one gives it
back. Both happen in the caller's session, so a failed create or delete rolls
back together with the counter change.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from .engine import EntitlementEngine
from .errors import QuotaExceededError
from .features import FeatureKey
from .models import Connection, Organization, Workspace

logger = logging.getLogger(__name__)


def _reject(
    engine: EntitlementEngine,
    organization: Organization,
    feature: FeatureKey,
    workspace: Workspace | None = None,
) -> QuotaExceededError:
    return QuotaExceededError(
        feature=feature.value,
        requested=1,
        current=engine.get_current_usage(organization, feature, workspace),
        limit=engine.get_limit(organization, feature, workspace),
    )


def create_workspace(
    db: Session,
    engine: EntitlementEngine,
    organization: Organization,
    name: str,
) -> Workspace:
    if not engine.consume_feature(organization, FeatureKey.WORKSPACES, 1):
        raise _reject(engine, organization, FeatureKey.WORKSPACES)

    workspace = Workspace(organization_id=organization.id, name=name.strip())
    db.add(workspace)
    db.flush()
    logger.info(
        "Workspace created - consumed plan feature (workspace_id=%s organization_id=%s)",
        workspace.id,
        organization.id,
    )
    return workspace


def delete_workspace(db: Session, engine: EntitlementEngine, workspace: Workspace) -> None:
    organization = workspace.organization
    for connection in list(workspace.connections):
        delete_connection(db, engine, connection)

    engine.unconsume_feature(organization, FeatureKey.WORKSPACES, 1)
    db.delete(workspace)
    db.flush()
    logger.info(
        "Workspace deleted - unconsumed plan feature (workspace_id=%s organization_id=%s)",
        workspace.id,
        organization.id,
    )


def create_connection(
    db: Session,
    engine: EntitlementEngine,
    workspace: Workspace,
    provider: str,
    name: str,
) -> Connection:
    organization = workspace.organization
    feature = FeatureKey.CONNECTIONS_PER_WORKSPACE
    if not engine.consume_feature(organization, feature, 1, workspace):
        raise _reject(engine, organization, feature, workspace)

    connection = Connection(workspace_id=workspace.id, provider=provider.strip(), name=name.strip())
    db.add(connection)
    db.flush()
    logger.info(
        "Connection created - consumed plan feature (connection_id=%s workspace_id=%s organization_id=%s)",
        connection.id,
        workspace.id,
        organization.id,
    )
    return connection


def delete_connection(db: Session, engine: EntitlementEngine, connection: Connection) -> None:
    workspace = connection.workspace
    organization = workspace.organization
    engine.unconsume_feature(organization, FeatureKey.CONNECTIONS_PER_WORKSPACE, 1, workspace)
    db.delete(connection)
    db.flush()
    db.expire(workspace, ["connections"])
    logger.info(
        "Connection deleted - unconsumed plan feature (connection_id=%s workspace_id=%s organization_id=%s)",
        connection.id,
        workspace.id,
        organization.id,
    )
