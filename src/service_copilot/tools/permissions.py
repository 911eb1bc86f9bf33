"""Permission scopes and subscription tiers."""

from enum import Enum


class ToolPermission(str, Enum):
    CUSTOMERS_READ = "CUSTOMERS_READ"
    CUSTOMERS_WRITE = "CUSTOMERS_WRITE"
    WORK_ORDERS_READ = "WORK_ORDERS_READ"
    WORK_ORDERS_WRITE = "WORK_ORDERS_WRITE"
    QUOTES_READ = "QUOTES_READ"
    QUOTES_WRITE = "QUOTES_WRITE"
    BILLING_READ = "BILLING_READ"
    BILLING_WRITE = "BILLING_WRITE"
    KB_READ = "KB_READ"


class SubscriptionTier(str, Enum):
    """Subscription tiers, declared from lowest to highest."""

    FREE = "FREE"
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"

    @property
    def rank(self) -> int:
        return list(SubscriptionTier).index(self)

    @classmethod
    def parse(cls, value: str | None) -> "SubscriptionTier":
        """Map a stored tier name to a tier, defaulting to FREE."""
        if value:
            try:
                return cls(value.upper())
            except ValueError:
                pass
        return cls.FREE


_FREE = frozenset(
    {
        ToolPermission.CUSTOMERS_READ,
        ToolPermission.CUSTOMERS_WRITE,
        ToolPermission.WORK_ORDERS_READ,
        ToolPermission.QUOTES_READ,
        ToolPermission.KB_READ,
    }
)
_STARTER = _FREE | {ToolPermission.WORK_ORDERS_WRITE, ToolPermission.QUOTES_WRITE}
_PROFESSIONAL = _STARTER | {ToolPermission.BILLING_READ, ToolPermission.BILLING_WRITE}

TIER_PERMISSIONS: dict[SubscriptionTier, frozenset[ToolPermission]] = {
    SubscriptionTier.FREE: _FREE,
    SubscriptionTier.STARTER: _STARTER,
    SubscriptionTier.PROFESSIONAL: _PROFESSIONAL,
    SubscriptionTier.ENTERPRISE: _PROFESSIONAL,
}


def tier_has_permission(tier: SubscriptionTier, permission: ToolPermission) -> bool:
    return permission in TIER_PERMISSIONS[tier]
