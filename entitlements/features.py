"""Feature identities, definitions and the decoded value type.

Plan limits and overrides store their value as a single string column
(``"true"``, ``"false"``, ``"25"``, ``"-1"``). That encoding is decoded once,
at the resolver boundary, into a :data:`FeatureValue`; nothing past the
resolvers parses strings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Final, Union

logger = logging.getLogger(__name__)

UNLIMITED: Final[int] = -1

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


class FeatureKey(str, Enum):
    TEAM_MEMBERS = "team_members"
    WORKSPACES = "workspaces"
    CONNECTIONS_PER_WORKSPACE = "connections_per_workspace"
    API_RATE_LIMIT = "api_rate_limit"
    UNIQUE_VISITORS = "unique_visitors"
    DATA_RETENTION_DAYS = "data_retention_days"
    PRIORITY_SUPPORT = "priority_support"

    @classmethod
    def parse(cls, value: "FeatureKey | str") -> "FeatureKey | None":
        """Return the enum member for ``value``, or None for unknown keys."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class FeatureType(str, Enum):
    BOOLEAN = "boolean"
    LIMIT = "limit"


class TrackingPeriod(str, Enum):
    LIFETIME = "lifetime"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TrackingScope(str, Enum):
    ORGANIZATION = "organization"
    WORKSPACE = "workspace"


@dataclass(frozen=True)
class FeatureDefinition:
    key: FeatureKey
    name: str
    type: FeatureType
    period: TrackingPeriod = TrackingPeriod.LIFETIME
    scope: TrackingScope = TrackingScope.ORGANIZATION
    description: str = ""
    category: str | None = None
    display_order: int = 0
    active: bool = True

    @property
    def is_boolean(self) -> bool:
        return self.type is FeatureType.BOOLEAN

    @property
    def is_workspace_scoped(self) -> bool:
        return self.scope is TrackingScope.WORKSPACE


@dataclass(frozen=True)
class BooleanValue:
    enabled: bool


@dataclass(frozen=True)
class LimitValue:
    amount: int


@dataclass(frozen=True)
class Unlimited:
    pass


FeatureValue = Union[BooleanValue, LimitValue, Unlimited]


def decode_value(raw: str | None, feature_type: FeatureType) -> FeatureValue | None:
    """Decode a stored value for a feature of ``feature_type``.

    Returns None when the value cannot be interpreted; callers treat that the
    same as an absent grant.
    """
    if raw is None:
        return None
    text = raw.strip()
    if feature_type is FeatureType.BOOLEAN:
        return BooleanValue(text.lower() in _TRUTHY)

    if text == str(UNLIMITED):
        return Unlimited()
    try:
        amount = int(text)
    except ValueError:
        logger.error("Invalid non-numeric limit value %r", raw)
        return None
    if amount < 0:
        logger.error("Invalid negative limit value %r", raw)
        return None
    return LimitValue(amount)


def encode_value(value: FeatureValue | bool | int | str) -> str:
    """Encode a value for storage in a plan limit, override or seed row."""
    if isinstance(value, Unlimited):
        return str(UNLIMITED)
    if isinstance(value, BooleanValue):
        return "true" if value.enabled else "false"
    if isinstance(value, LimitValue):
        return str(value.amount)
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        if value < UNLIMITED:
            raise ValueError(f"Limit must be >= -1, got {value}.")
        return str(value)
    return value.strip()


def limit_of(value: FeatureValue | None) -> int | None:
    """Numeric view of a decoded limit: ``-1`` for unlimited, None otherwise."""
    if isinstance(value, Unlimited):
        return UNLIMITED
    if isinstance(value, LimitValue):
        return value.amount
    return None


def grants_feature(value: FeatureValue | None) -> bool:
    if value is None:
        return False
    if isinstance(value, BooleanValue):
        return value.enabled
    return True
