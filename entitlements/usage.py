"""Usage counters per tracking period.

A counter row covers one (organization, feature, workspace-or-none) key for
one period window. Rows are created on first write to a window; rows of
earlier windows stay in place as history and simply fall outside the
current-window filter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from .features import FeatureDefinition, TrackingPeriod
from .models import Organization, UsageTracking, Workspace, as_utc, utc_now

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# counter writes go through the table so no ORM instance holds a stale value
usage_table = UsageTracking.__table__


@dataclass(frozen=True)
class UsageWindow:
    period: TrackingPeriod
    starts_at: datetime
    ends_at: datetime | None


@dataclass(frozen=True)
class UsageCounter:
    id: int
    organization_id: int
    workspace_id: int | None
    feature: str
    window: UsageWindow


def current_period_window(period: TrackingPeriod, now: datetime) -> UsageWindow:
    now = as_utc(now)
    if period is TrackingPeriod.LIFETIME:
        return UsageWindow(period, EPOCH, None)

    if period is TrackingPeriod.MONTHLY:
        starts_at = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if starts_at.month == 12:
            ends_at = starts_at.replace(year=starts_at.year + 1, month=1)
        else:
            ends_at = starts_at.replace(month=starts_at.month + 1)
        return UsageWindow(period, starts_at, ends_at)

    starts_at = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return UsageWindow(period, starts_at, starts_at.replace(year=starts_at.year + 1))


class UsageTracker:
    """Reads and writes usage counters; the only writer of ``usage_tracking``."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock

    def window_for(self, definition: FeatureDefinition) -> UsageWindow:
        return current_period_window(definition.period, self.clock())

    def _window_criteria(self, columns: Any, organization: Organization, definition: FeatureDefinition) -> tuple:
        # `columns` is the mapped class or a table alias's `.c`
        now = as_utc(self.clock())
        return (
            columns.organization_id == organization.id,
            columns.feature == definition.key.value,
            columns.period_type == definition.period.value,
            columns.period_starts_at <= now,
            or_(
                columns.period_ends_at.is_(None),
                columns.period_ends_at > now,
            ),
        )

    def _in_window(self, stmt: Select, organization: Organization, definition: FeatureDefinition) -> Select:
        return stmt.where(*self._window_criteria(UsageTracking, organization, definition))

    @staticmethod
    def _scoped_workspace(definition: FeatureDefinition, workspace: Workspace | None) -> Workspace | None:
        # organization-scoped features are always counted on the organization row
        return workspace if definition.is_workspace_scoped else None

    def organization_usage(self, organization: Organization, definition: FeatureDefinition) -> int:
        """Usage in the current window, summed over every workspace."""
        stmt = self._in_window(
            select(func.coalesce(func.sum(UsageTracking.current_usage), 0)),
            organization,
            definition,
        )
        return int(self.db.scalar(stmt) or 0)

    def workspace_usage(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace,
    ) -> int:
        """Usage in the current window for one workspace only."""
        stmt = self._in_window(
            select(func.coalesce(func.sum(UsageTracking.current_usage), 0)),
            organization,
            definition,
        ).where(UsageTracking.workspace_id == workspace.id)
        return int(self.db.scalar(stmt) or 0)

    def current_usage(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None = None,
    ) -> int:
        workspace = self._scoped_workspace(definition, workspace)
        if workspace is None:
            return self.organization_usage(organization, definition)
        return self.workspace_usage(organization, definition, workspace)

    def _find_counter_id(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None,
        window: UsageWindow,
    ) -> int | None:
        stmt = select(UsageTracking.id).where(
            UsageTracking.organization_id == organization.id,
            UsageTracking.feature == definition.key.value,
            UsageTracking.period_type == window.period.value,
            UsageTracking.period_starts_at == window.starts_at,
        )
        if workspace is None:
            stmt = stmt.where(UsageTracking.workspace_id.is_(None))
        else:
            stmt = stmt.where(UsageTracking.workspace_id == workspace.id)
        return self.db.scalar(stmt.order_by(UsageTracking.id).limit(1))

    def get_or_initialize(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None = None,
    ) -> UsageCounter:
        """Counter for the current window, inserting a zeroed row if none exists."""
        workspace = self._scoped_workspace(definition, workspace)
        window = self.window_for(definition)
        counter_id = self._find_counter_id(organization, definition, workspace, window)
        if counter_id is None:
            result = self.db.execute(
                insert(usage_table).values(
                    organization_id=organization.id,
                    workspace_id=workspace.id if workspace else None,
                    feature=definition.key.value,
                    current_usage=0,
                    period_type=window.period.value,
                    period_starts_at=window.starts_at,
                    period_ends_at=window.ends_at,
                )
            )
            counter_id = result.inserted_primary_key[0]
            logger.debug(
                "Opened %s usage window for organization %s feature %s starting %s",
                window.period.value,
                organization.id,
                definition.key.value,
                window.starts_at.isoformat(),
            )
        return UsageCounter(
            id=counter_id,
            organization_id=organization.id,
            workspace_id=workspace.id if workspace else None,
            feature=definition.key.value,
            window=window,
        )

    def counter_value(self, counter: UsageCounter) -> int:
        value = self.db.scalar(select(UsageTracking.current_usage).where(UsageTracking.id == counter.id))
        return int(value or 0)

    def increment(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None,
        amount: int,
        *,
        limit: int | None = None,
    ) -> int | None:
        """Add ``amount`` to the current-window counter and return the new value.

        With ``limit`` the update only applies while the usage read for this
        scope, plus ``amount``, stays within it. The other rows of the scope
        are summed inside the same UPDATE, so a write committed elsewhere
        between the caller's check and this statement is still counted.
        None is returned when the update did not apply.
        """
        workspace = self._scoped_workspace(definition, workspace)
        counter = self.get_or_initialize(organization, definition, workspace)
        stmt = (
            update(usage_table)
            .where(usage_table.c.id == counter.id)
            .values(
                current_usage=usage_table.c.current_usage + amount,
                updated_at=utc_now(),
            )
        )
        if limit is not None:
            others = usage_table.alias("others")
            other_usage = select(func.coalesce(func.sum(others.c.current_usage), 0)).where(
                *self._window_criteria(others.c, organization, definition),
                others.c.id != counter.id,
            )
            if workspace is not None:
                other_usage = other_usage.where(others.c.workspace_id == workspace.id)
            stmt = stmt.where(
                usage_table.c.current_usage + amount + other_usage.scalar_subquery() <= limit
            )
        result = self.db.execute(stmt)
        if result.rowcount == 0:
            return None
        return self.counter_value(counter)

    def decrement(
        self,
        organization: Organization,
        definition: FeatureDefinition,
        workspace: Workspace | None,
        amount: int,
    ) -> int:
        """Subtract ``amount`` from the current-window counter, flooring at zero."""
        workspace = self._scoped_workspace(definition, workspace)
        window = self.window_for(definition)
        counter_id = self._find_counter_id(organization, definition, workspace, window)
        if counter_id is None:
            return 0
        counter = UsageCounter(
            id=counter_id,
            organization_id=organization.id,
            workspace_id=workspace.id if workspace else None,
            feature=definition.key.value,
            window=window,
        )
        before = self.counter_value(counter)
        stmt = (
            update(usage_table)
            .where(usage_table.c.id == counter_id)
            .values(
                current_usage=case(
                    (usage_table.c.current_usage > amount, usage_table.c.current_usage - amount),
                    else_=0,
                ),
                updated_at=utc_now(),
            )
        )
        self.db.execute(stmt)
        if amount > before:
            logger.info(
                "Clamped unconsume of %s for organization %s feature %s at zero (was %s)",
                amount,
                organization.id,
                definition.key.value,
                before,
            )
        return self.counter_value(counter)
