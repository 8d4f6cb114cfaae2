import logging
from dataclasses import asdict, dataclass
from typing import Optional

from tenant_billing.billing import usage
from tenant_billing.billing.repository import SubscriptionRepository
from tenant_billing.billing.usage import UsageCounterReader
from tenant_billing.errors import LimitExceeded, ValidationError
from tenant_billing.models import SubscriptionStatus
from tenant_billing.models.plan import UNLIMITED
from tenant_billing.utils import utcnow

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

# Statuses whose plan limits still apply.
BILLABLE_STATUSES = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)
WRITE_STATUSES = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE})

WRITE_ACTIONS = frozenset(
    {
        "invite_users",
        "create_workspaces",
        "create_boards",
        "upload_files",
        "upgrade_plan",
        "manage_integrations",
    }
)
READ_ACTIONS = frozenset({"access_data", "export_data", "view_billing"})

NO_SUBSCRIPTION = "No active subscription found"


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    current: float
    limit: float
    requested: float
    available: float
    message: Optional[str] = None

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class ActionCheck:
    allowed: bool
    message: str
    reason: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self):
        return {key: value for key, value in asdict(self).items() if value is not None}


class LimitService:
    """
    Plan quota and feature checks for a tenant.

    Reads the tenant's open subscription and never changes it. Usage numbers
    come from the injected ``UsageReader``.
    """

    def __init__(self, usage_reader=None, grace_period_days=7):
        self.usage_reader = usage_reader or UsageCounterReader()
        self.grace_period_days = grace_period_days

    @classmethod
    def from_config(cls, config, usage_reader=None):
        return cls(
            usage_reader=usage_reader,
            grace_period_days=int(config.get("BILLING_GRACE_PERIOD_DAYS", 7)),
        )

    # ------------------------------------------------------------------
    # Quota checks
    # ------------------------------------------------------------------

    def can_add_users(self, tenant, count=1):
        return self._check_count(tenant, "max_users", usage.USERS, count, "user")

    def can_create_workspaces(self, tenant, count=1):
        return self._check_count(tenant, "max_workspaces", usage.WORKSPACES, count, "workspace")

    def can_create_boards(self, tenant, workspace_id, count=1):
        return self._check_count(
            tenant, "max_boards", usage.BOARDS, count, "board", scope=workspace_id
        )

    def can_upload_storage(self, tenant, size_bytes):
        requested_mb = round(size_bytes / BYTES_PER_MB, 2)
        plan = self._billable_plan(tenant)
        if plan is None:
            return LimitCheck(False, 0, 0, requested_mb, 0, NO_SUBSCRIPTION)

        current_mb = self._storage_mb(tenant)
        limit_mb = plan.limit("max_storage_mb")
        if limit_mb == UNLIMITED:
            return LimitCheck(True, current_mb, UNLIMITED, requested_mb, UNLIMITED,
                              "Unlimited storage allowed")

        available = max(0, round(limit_mb - current_mb, 2))
        allowed = requested_mb <= limit_mb - current_mb
        message = (
            f"Can upload {requested_mb} MB"
            if allowed
            else f"Cannot upload {requested_mb} MB. Only {available} MB available."
        )
        return LimitCheck(allowed, current_mb, limit_mb, requested_mb, available, message)

    def has_feature(self, tenant, feature):
        plan = self._billable_plan(tenant)
        if plan is None:
            return LimitCheck(False, 0, 0, 0, 0, NO_SUBSCRIPTION)
        if plan.has_feature(feature):
            return LimitCheck(True, 0, 0, 0, 0, f"Feature '{feature}' is available")
        return LimitCheck(
            False, 0, 0, 0, 0, f"Feature '{feature}' is not available on your current plan"
        )

    def enforce_limit(self, tenant, resource, amount_or_feature=None, workspace_id=None):
        """Raise LimitExceeded instead of returning a result."""
        if resource == "feature":
            check = self.has_feature(tenant, amount_or_feature)
            if not check.allowed:
                raise LimitExceeded("feature", check.message)
            return None

        if resource == "users":
            check = self.can_add_users(tenant, amount_or_feature or 1)
        elif resource == "workspaces":
            check = self.can_create_workspaces(tenant, amount_or_feature or 1)
        elif resource == "boards":
            if workspace_id is None:
                raise ValidationError("workspace_id is required for board limits")
            check = self.can_create_boards(tenant, workspace_id, amount_or_feature or 1)
        elif resource == "storage":
            check = self.can_upload_storage(tenant, amount_or_feature or 0)
        else:
            raise ValidationError(f"Unknown limit type '{resource}'")

        if not check.allowed:
            logger.info(
                "Limit exceeded",
                extra={"tenant_id": tenant.id, "resource": resource, "limit": check.limit},
            )
            raise LimitExceeded(resource, check.message, current=check.current, limit=check.limit)
        return check

    # ------------------------------------------------------------------
    # Status-based gating
    # ------------------------------------------------------------------

    def can_perform_action(self, tenant, action):
        subscription = SubscriptionRepository.get_open_for_tenant(tenant.id)
        if subscription is None:
            latest = SubscriptionRepository.get_latest_for_tenant(tenant.id)
            if latest is None:
                return ActionCheck(False, NO_SUBSCRIPTION, reason="no_subscription")
            subscription = latest

        status = subscription.status
        if status in WRITE_STATUSES or action == "view_billing":
            return ActionCheck(True, "Action allowed")

        is_read = action in READ_ACTIONS
        if status == SubscriptionStatus.EXPIRED or self._grace_elapsed(subscription):
            return ActionCheck(
                False,
                f"Action '{action}' is not allowed after the subscription has expired",
                reason="expired",
                status=status.value,
            )

        if is_read and status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED):
            return ActionCheck(True, "Action allowed")

        return ActionCheck(
            False,
            f"Action '{action}' is not allowed in subscription status '{status.value}'",
            reason="subscription_status",
            status=status.value,
        )

    # ------------------------------------------------------------------
    # Usage reporting
    # ------------------------------------------------------------------

    def get_current_usage(self, tenant):
        plan = self._billable_plan(tenant)

        def entry(current, key):
            limit = plan.limit(key) if plan else 0
            percentage = round(current / limit * 100, 2) if limit > 0 else 0
            return {"current": current, "limit": limit, "percentage": percentage}

        return {
            "users": entry(self.usage_reader.count(tenant.id, usage.USERS), "max_users"),
            "workspaces": entry(self.usage_reader.count(tenant.id, usage.WORKSPACES), "max_workspaces"),
            "storage": entry(self._storage_mb(tenant), "max_storage_mb"),
            "features": list(plan.features or []) if plan else [],
        }

    def get_limit_warnings(self, tenant, threshold=0.8):
        if not 0 < threshold < 1:
            raise ValueError("threshold must be between 0 and 1")

        warnings = []
        current_usage = self.get_current_usage(tenant)
        for resource in ("users", "workspaces", "storage"):
            current = current_usage[resource]["current"]
            limit = current_usage[resource]["limit"]
            if limit in (UNLIMITED, 0):
                continue
            if current >= limit:
                warnings.append(
                    {
                        "type": "exceeded",
                        "resource": resource,
                        "message": f"{resource.capitalize()} limit exceeded ({current}/{limit})",
                        "severity": "error",
                    }
                )
            elif current / limit >= threshold:
                warnings.append(
                    {
                        "type": "warning",
                        "resource": resource,
                        "message": f"{resource.capitalize()} limit nearly reached ({current}/{limit})",
                        "severity": "warning",
                    }
                )
        return warnings

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _billable_plan(self, tenant):
        subscription = SubscriptionRepository.get_open_for_tenant(tenant.id)
        if subscription is None or subscription.status not in BILLABLE_STATUSES:
            return None
        return subscription.plan

    def _check_count(self, tenant, limit_key, resource, requested, noun, scope=""):
        plan = self._billable_plan(tenant)
        if plan is None:
            return LimitCheck(False, 0, 0, requested, 0, NO_SUBSCRIPTION)

        current = self.usage_reader.count(tenant.id, resource, scope)
        limit = plan.limit(limit_key)
        if limit == UNLIMITED:
            return LimitCheck(True, current, UNLIMITED, requested, UNLIMITED,
                              f"Unlimited {noun}s allowed")

        available = max(0, limit - current)
        allowed = current + requested <= limit
        message = (
            f"Can add {requested} {noun}(s)"
            if allowed
            else f"Cannot add {requested} {noun}(s). Only {available} slot(s) available."
        )
        return LimitCheck(allowed, current, limit, requested, available, message)

    def _storage_mb(self, tenant):
        return round(self.usage_reader.count(tenant.id, usage.STORAGE_BYTES) / BYTES_PER_MB, 2)

    def _grace_elapsed(self, subscription):
        if subscription.status != SubscriptionStatus.CANCELED or subscription.ends_at is None:
            return False
        return utcnow() > subscription.grace_period_end(self.grace_period_days)
