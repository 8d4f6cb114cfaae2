class BillingError(Exception):
    """Base class for billing domain failures."""

    status_code = 400
    error_code = "billing_error"
    retryable = False


class InvalidTransition(BillingError):
    status_code = 409
    error_code = "invalid_transition"

    def __init__(self, current, target, operation=None):
        self.current = current
        self.target = target
        self.operation = operation
        action = f" via {operation}" if operation else ""
        super().__init__(f"Cannot transition from '{current}' to '{target}'{action}")


class MissingPrerequisite(BillingError):
    status_code = 422
    error_code = "missing_prerequisite"

    def __init__(self, field, message=None):
        self.field = field
        super().__init__(message or f"Required field '{field}' is not set")


class ProviderError(BillingError):
    """Any failure reported by the upstream payment provider."""

    status_code = 502
    error_code = "provider_error"
    retryable = True

    def __init__(self, provider, operation, message, original=None):
        self.provider = provider
        self.operation = operation
        self.message = message
        self.original = original
        super().__init__(f"[{provider}] {operation} failed: {message}")


class ValidationError(BillingError):
    status_code = 400
    error_code = "validation_error"


class SignatureError(BillingError):
    status_code = 401
    error_code = "invalid_signature"


class DuplicateEventError(BillingError):
    status_code = 200
    error_code = "duplicate_event"

    def __init__(self, provider, external_event_id):
        self.provider = provider
        self.external_event_id = external_event_id
        super().__init__(f"Event {provider}:{external_event_id} already processed")


class SubscriptionNotFound(BillingError):
    status_code = 404
    error_code = "subscription_not_found"
    retryable = True


class DuplicateSubscriptionError(BillingError):
    status_code = 409
    error_code = "duplicate_subscription"

    def __init__(self, tenant_id):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} already has an open subscription")


class LimitExceeded(BillingError):
    status_code = 402
    error_code = "limit_exceeded"

    def __init__(self, resource, message, current=None, limit=None):
        self.resource = resource
        self.current = current
        self.limit = limit
        super().__init__(message)
