from tenant_billing.models import UsageCounter

USERS = "users"
WORKSPACES = "workspaces"
BOARDS = "boards"
STORAGE_BYTES = "storage_bytes"


class UsageReader:
    """Source of current tenant usage for limit checks."""

    def count(self, tenant_id, resource, scope=""):
        raise NotImplementedError


class UsageCounterReader(UsageReader):
    """Reads the counters kept in ``usage_counters``."""

    def count(self, tenant_id, resource, scope=""):
        counter = (
            UsageCounter.query
            .filter_by(tenant_id=tenant_id, resource=resource, scope=str(scope or ""))
            .one_or_none()
        )
        return int(counter.value) if counter else 0
