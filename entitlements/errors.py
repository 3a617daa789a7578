"""Exceptions raised around the entitlement engine.

The engine itself answers with booleans and integers; these are raised by
the code that wraps it (lifecycle hooks, admin operations, startup checks).
"""

from __future__ import annotations


class EntitlementError(Exception):
    """Base exception for entitlement errors."""


class QuotaExceededError(EntitlementError):
    def __init__(
        self,
        feature: str,
        requested: int,
        current: int,
        limit: int | None,
    ) -> None:
        self.feature = feature
        self.requested = requested
        self.current = current
        self.limit = limit
        if limit is None:
            message = f"Feature '{feature}' is not available on the current plan."
        else:
            message = f"Plan limit reached for '{feature}' ({current}/{limit}). Upgrade plan to add more."
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "quota_exceeded",
            "feature": self.feature,
            "requested": self.requested,
            "current": self.current,
            "limit": self.limit,
            "message": str(self),
        }


class CatalogMismatchError(EntitlementError):
    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Feature catalog mismatch: " + "; ".join(problems))


class InvalidAllocationError(EntitlementError):
    pass


class PlanNotFoundError(EntitlementError):
    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"Unknown plan '{slug}'.")


class UnknownFeatureError(EntitlementError):
    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Unknown feature '{feature}'.")
