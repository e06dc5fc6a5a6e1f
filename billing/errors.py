"""
Billing Errors
Owner: CC2
Workstream: W2P5

Every error the billing module raises on purpose. Routes render any
BillingError as {"error": code, "message": ...} with its status code.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""

    status_code = 500
    code = 'billing_error'
    retryable = False

    def __init__(self, message: str = None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {'error': self.code, 'message': self.message}


class AuthenticationError(BillingError):
    """Webhook signature missing or invalid. The provider will retry."""

    status_code = 401
    code = 'invalid_signature'


class MalformedPayloadError(BillingError):
    """Webhook body unparseable or missing required fields."""

    status_code = 400
    code = 'malformed_payload'


class DuplicateEventError(BillingError):
    """
    Raised by storage when (provider, event_id) is already in the event log.

    Never reaches HTTP clients: the reconciler turns it into an
    ignored_duplicate outcome.
    """

    status_code = 200
    code = 'duplicate_event'

    def __init__(self, provider: str, event_id: str):
        super().__init__(f'Event {provider}:{event_id} already recorded')
        self.provider = provider
        self.event_id = event_id


class HardCapExceeded(BillingError):
    """Active-user usage is past the hard cap; the action is blocked."""

    status_code = 402
    code = 'av30.hard_cap'

    def __init__(self, org_id: str, usage: Optional[int] = None, cap: Optional[int] = None):
        super().__init__('Active user hard cap reached; action blocked')
        self.org_id = org_id
        self.usage = usage
        self.cap = cap

    def to_dict(self) -> dict:
        return {
            'error': self.code,
            'message': self.message,
            'org_id': self.org_id,
            'current': self.usage,
            'limit': self.cap,
        }


class ConfigurationError(BillingError):
    """Startup configuration is unusable. Never raised at request time."""

    code = 'configuration_error'


class PlanSelectionError(BillingError):
    """Checkout request rejected by the purchase rules."""

    status_code = 400
    code = 'invalid_plan_selection'


class ProviderUnavailableError(BillingError):
    """Payment provider call failed or timed out. Safe to retry."""

    status_code = 503
    code = 'provider_unavailable'
    retryable = True


class ReconciliationConflict(BillingError):
    """A pending order changed state under the transaction. Safe to retry."""

    status_code = 503
    code = 'reconciliation_conflict'
    retryable = True


class StorageUnavailableError(BillingError):
    """Database unreachable or a statement timed out. Safe to retry."""

    status_code = 503
    code = 'storage_unavailable'
    retryable = True


class OrgContextError(BillingError):
    """Request carries no organisation context."""

    status_code = 403
    code = 'org_context_required'
