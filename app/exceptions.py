"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class EntitlementError(Exception):
    """Base exception for all entitlement engine errors."""

    pass


class DuplicateEventError(EntitlementError):
    """Raised when a webhook event id has already been recorded."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event already processed: {event_id}")


class UnknownPlanError(EntitlementError):
    """Raised when no policy row exists for a plan."""

    def __init__(self, plan: str) -> None:
        self.plan = plan
        super().__init__(f"Unknown plan: {plan}")


class InsufficientCreditsError(EntitlementError):
    """Account balance does not cover a consume request."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class FeatureNotAllowedError(EntitlementError):
    """The effective plan does not include a feature."""

    def __init__(self, feature: str, plan: str) -> None:
        self.feature = feature
        self.plan = plan
        super().__init__(f"Feature {feature} requires a plan upgrade (current plan: {plan})")


class ExternalFetchFailure(EntitlementError):
    """Raised when the metrics-fetch collaborator fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Metrics fetch failed: {message}")


class ExternalFetchTimeoutError(ExternalFetchFailure):
    """Raised when the metrics-fetch collaborator does not answer in time."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timed out after {timeout_seconds}s")


class MisconfiguredIntegrationError(EntitlementError):
    """Raised when an external integration is used without its configuration."""

    def __init__(self, integration: str, missing: str) -> None:
        self.integration = integration
        self.missing = missing
        super().__init__(f"{integration} is not configured: missing {missing}")


class AccountNotFoundError(EntitlementError):
    """Raised when account doesn't exist."""

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class EntityNotFoundError(EntitlementError):
    """Raised when a refreshable entity doesn't exist."""

    def __init__(self, entity_id: UUID) -> None:
        self.entity_id = entity_id
        super().__init__(f"Refreshable entity not found: {entity_id}")


class PaymentProviderError(EntitlementError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(EntitlementError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")

